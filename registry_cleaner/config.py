import logging
import os
import re
import sys
from argparse import ArgumentDefaultsHelpFormatter, ArgumentParser
from datetime import timedelta
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from yaml import YAMLError, safe_load

DEFAULT_BASE_URL = "https://gitlab.com/"
DEFAULT_KEEP_N = 10
MAX_CONCURRENT_REQUESTS = 20
DEFAULT_TIMEOUT = 20
LOG_FORMAT = "[%(asctime)s] [%(levelname)-8s] |> %(message)s"
ENV_VARS = {
    "token": "GITLAB_TOKEN",
    "base_url": "GITLAB_BASE_URL",
    "project": "GITLAB_PROJECT_ID",
}
DURATION_REGEXP = re.compile(r"(\d+)\s*([a-z]+)")
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def parse_duration(value: str | None) -> timedelta:
    """Parse a human readable age such as ``12h``, ``30d`` or ``2m``.

    Only the first letter of the unit counts: ``h`` hours, ``d`` days and
    ``m`` months of 30 days. An empty value means no age cutoff.
    """
    if not value:
        return timedelta(0)
    found = DURATION_REGEXP.search(value.lower())
    if not found:
        raise ValueError(f"can't parse the duration string: {value}")
    amount = int(found.group(1))
    unit = found.group(2)[0]
    if unit == "h":
        return timedelta(hours=amount)
    if unit == "d":
        return timedelta(days=amount)
    if unit == "m":
        return timedelta(days=30 * amount)
    raise ValueError(f"unsupported duration unit: {found.group(2)}")


def from_env(value: str) -> str:
    if value.startswith("__ENV:"):
        return os.environ.get(value[6:].strip(), "")
    return value


class PatternRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    repositories: tuple[re.Pattern, ...] = ()
    tags: tuple[re.Pattern, ...] = ()
    excludes: tuple[re.Pattern, ...] = ()

    @field_validator("repositories", "tags", "excludes", mode="before")
    @classmethod
    def compile_regexps(cls, rules: list[str | re.Pattern] | None) -> tuple:
        compiled = []
        for rule in rules or ():
            if isinstance(rule, re.Pattern):
                compiled.append(rule)
                continue
            try:
                compiled.append(re.compile(rule))
            except re.error as err:
                logging.critical(f"Compile regex {rule} error: {err}")
                sys.exit(1)
        return tuple(compiled)


class RetentionPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    keep_n: int = DEFAULT_KEEP_N
    older_than: timedelta = timedelta(0)

    @field_validator("keep_n")
    @classmethod
    def check_keep_n(cls, value: int) -> int:
        if value < 0:
            logging.warning(f"Keep N must not be negative, got {value}. Set 0")
            return 0
        return value

    @field_validator("older_than", mode="before")
    @classmethod
    def parse_older_than(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            try:
                return parse_duration(value)
            except ValueError as err:
                logging.critical(f"Invalid older than value: {err}")
                sys.exit(1)
        return value


class Args(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str | None = None
    base_url: str | None = None
    project: str | None = None
    registries: list[str] | None = None
    tags: list[str] | None = None
    excludes: list[str] | None = None
    keep_n: int | None = None
    older_than: str | None = None
    dry_run: bool = False
    insecure: bool = False
    verbose: bool = False
    version: bool = False
    http_logs: bool = False
    config: Path | None = None
    report: Path | None = None

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> "Args":
        parser = ArgumentParser(
            prog="gitlab-registry-cleaner",
            description="Retention cleaner for GitLab container registry tags",
            formatter_class=ArgumentDefaultsHelpFormatter,
        )
        parser.add_argument(
            "-T",
            "--token",
            help="Gitlab private token, environment: GITLAB_TOKEN",
            default=None,
        )
        parser.add_argument(
            "--base-url",
            help=f"Gitlab base url ({DEFAULT_BASE_URL} if not set), environment: GITLAB_BASE_URL",
            default=None,
        )
        parser.add_argument(
            "-p",
            "--project",
            help="[REQUIRED] The ID or path of the project, environment: GITLAB_PROJECT_ID",
            default=None,
        )
        parser.add_argument(
            "-r",
            "--registry",
            dest="registries",
            action="append",
            help="Registry repository path regex, repeatable. Clean all repositories in project if not set",
            default=None,
        )
        parser.add_argument(
            "-t",
            "--tag",
            dest="tags",
            action="append",
            help="Image tag regex, repeatable",
            default=None,
        )
        parser.add_argument(
            "-e",
            "--exclude",
            dest="excludes",
            action="append",
            help="Exclude image tag regex, repeatable",
            default=None,
        )
        parser.add_argument(
            "-k",
            "--keep-n",
            type=int,
            help=f"Keeps N latest matching tags for each registry repository ({DEFAULT_KEEP_N} if not set)",
            default=None,
        )
        parser.add_argument(
            "-o",
            "--older-then",
            "--older-than",
            dest="older_than",
            help="Tags to delete that are older than the given time, written in human readable form 1h, 1d, 1m",
            default=None,
        )
        parser.add_argument(
            "-n",
            "--dry-run",
            action="store_true",
            help="Only print which images would be deleted",
            default=False,
        )
        parser.add_argument(
            "-K",
            "--insecure",
            action="store_true",
            help="Allow connections to SSL sites without certs",
            default=False,
        )
        parser.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Verbose output",
            default=False,
        )
        parser.add_argument(
            "-V",
            "--version",
            action="store_true",
            help="Print version and exit",
            default=False,
        )
        parser.add_argument(
            "--http-logs",
            action="store_true",
            help="Enable http logs for every request",
            default=False,
        )
        parser.add_argument(
            "-c",
            "--config",
            type=Path,
            help="Optional YAML file with settings, rules and policy",
            default=None,
        )
        parser.add_argument(
            "--report",
            type=Path,
            help="Write a JSON report of the cleanup to this file",
            default=None,
        )
        args = parser.parse_args(argv)
        return cls(**vars(args))


class Config(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_url: str = DEFAULT_BASE_URL
    token: str = ""
    project: str
    rules: PatternRules = PatternRules()
    policy: RetentionPolicy = RetentionPolicy()
    insecure: bool = False
    max_concurrent_requests: int = MAX_CONCURRENT_REQUESTS
    timeout: int | None = DEFAULT_TIMEOUT
    proxy: str | None = None
    log_file: Path | None = None
    report: Path | None = None
    args: Args = Args()

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Config":
        return Config.model_validate(data)

    @property
    def api_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/v4"

    @property
    def dry_run(self) -> bool:
        return self.args.dry_run

    @field_validator("token", mode="before")
    @classmethod
    def handle_env_vars(cls, value: str | None) -> str:
        if not value:
            return ""
        token = from_env(value)
        if not token:
            logging.warning(
                f"Token variable from '{value}' is not set, requests will be anonymous"
            )
        return token

    @field_validator("project", mode="before")
    @classmethod
    def project_to_str(cls, value: Any) -> str:
        project = str(value).strip().strip("/")
        if not project:
            logging.critical("Project ID required!")
            sys.exit(1)
        return project

    @field_validator("base_url")
    @classmethod
    def check_base_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            logging.critical(
                f"Base url must be a valid url: <scheme>://<address>[:port], got '{value}'"
            )
            sys.exit(1)
        return value

    @field_validator("max_concurrent_requests")
    @classmethod
    def set_max_concurrent_requests(cls, value: int) -> int:
        if value <= 0:
            logging.error("Max_concurrent_requests must be greater than 0. Set 10")
            return 10
        return value

    @field_validator("proxy")
    @classmethod
    def set_proxy(cls, value: str | None) -> str | None:
        if not value:
            return None
        value = from_env(value)
        if not value:
            return None

        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            logging.critical(
                "Field proxy must be a valid url: <scheme>://<address>[:port]; Remove value or fix it"
            )
            sys.exit(1)

        return value

    @field_validator("timeout")
    @classmethod
    def set_timeout(cls, value: int | None) -> int:
        if not value or not 0 < value <= 120:
            logging.error(f"Timeout must be in range 1-120. Set {DEFAULT_TIMEOUT}")
            return DEFAULT_TIMEOUT
        return value


def read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        logging.critical(f"Missing config file {path}")
        sys.exit(1)

    with open(path, "r") as conf_file:
        try:
            data = safe_load(conf_file)
        except YAMLError as err:
            logging.critical(f"Can't parse config file {path}: {err}")
            sys.exit(1)

    if data is None:
        return {}
    if not isinstance(data, dict):
        logging.critical(f"Config file {path} must contain a mapping")
        sys.exit(1)
    return data


def merge_settings(data: dict[str, Any], args: Args) -> dict[str, Any]:
    """Combine file settings with environment variables and CLI arguments.

    CLI arguments override the file, the file overrides the environment.
    """
    settings = dict(data)
    for field, variable in ENV_VARS.items():
        if not settings.get(field) and os.environ.get(variable):
            settings[field] = os.environ[variable]

    overrides = {
        "token": args.token,
        "base_url": args.base_url,
        "project": args.project,
        "report": args.report,
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})
    if args.insecure:
        settings["insecure"] = True

    rules = dict(settings.get("rules") or {})
    for field, value in (
        ("repositories", args.registries),
        ("tags", args.tags),
        ("excludes", args.excludes),
    ):
        if value:
            rules[field] = value
    settings["rules"] = rules

    policy = dict(settings.get("policy") or {})
    if args.keep_n is not None:
        policy["keep_n"] = args.keep_n
    if args.older_than is not None:
        policy["older_than"] = args.older_than
    settings["policy"] = policy
    return settings


def load_config(args: Args) -> Config:
    data = read_config_file(args.config) if args.config else {}
    settings = merge_settings(data, args)

    if not settings.get("project"):
        logging.critical("Project ID required!")
        logging.info("Use --project, 'project' in config file or GITLAB_PROJECT_ID")
        sys.exit(1)

    try:
        return Config.from_dict({**settings, "args": args})
    except ValidationError as e:
        logging.critical(f"Invalid config: {e}")
        sys.exit(1)
