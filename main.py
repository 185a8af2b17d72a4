import asyncio
import logging
import platform
import sys

from registry_cleaner import __version__
from registry_cleaner.cleaner import cleanup_registry
from registry_cleaner.config import Args, Config, load_config
from registry_cleaner.utils import init_logger, write_report


def perform_cleanup(config: Config) -> None:
    if config.dry_run:
        logging.warning("Running in dry-run mode, found tags will not be deleted")
    result = asyncio.run(cleanup_registry(config))
    if config.report:
        write_report(result, config.report)
        logging.info(f"Report written to {config.report}")
    logging.info(
        f"Finished cleanup of '{result.project}' with {len(result.errors)} errors"
    )


def run(argv: list[str] | None = None) -> None:
    args = Args.from_args(argv)
    if args.version:
        print("App Version:", __version__)
        print("Python Version:", platform.python_version())
        sys.exit(0)
    config = load_config(args)
    init_logger(config)
    try:
        perform_cleanup(config)
    except KeyboardInterrupt:
        logging.warning("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    run()
