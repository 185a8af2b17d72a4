import json
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from enum import StrEnum
from logging import LogRecord
from pathlib import Path
import re

from registry_cleaner.config import LOG_FORMAT, Config, PatternRules, RetentionPolicy
from registry_cleaner.models import (
    CleanupResult,
    DeletionOutcome,
    DeletionStatus,
    Repository,
    RepositoryInfo,
    Tag,
)

LATEST_TAG = "latest"


class Colors(StrEnum):
    RED = "\033[31m"
    CRED = "\033[91m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    RESET = "\033[0m"


class ColoredFormatter(logging.Formatter):
    def __init__(self, fmt: str | None = None, *args, **kwargs) -> None:
        self.format_ = fmt
        self.FORMATS = {
            logging.DEBUG: f"{Colors.BLUE}{self.format_}{Colors.RESET}",
            logging.WARNING: f"{Colors.YELLOW}{self.format_}{Colors.RESET}",
            logging.ERROR: f"{Colors.RED}{self.format_}{Colors.RESET}",
            logging.CRITICAL: f"{Colors.CRED}{self.format_}{Colors.RESET}",
        }
        super().__init__(fmt, *args, **kwargs)

    def format(self, record: LogRecord) -> str:
        log_fmt = self.FORMATS.get(record.levelno, self.format_)
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def init_logger(config: Config) -> None:
    if not config.args.http_logs:
        logging.getLogger("httpx").disabled = True
        logging.getLogger("httpcore").disabled = True

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(ColoredFormatter(LOG_FORMAT))
    handlers: list[logging.Handler] = [stream_handler]

    if config.log_file:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    level = logging.DEBUG if config.args.verbose else logging.INFO
    logging.basicConfig(level=level, handlers=handlers, force=True)


def log_settings(config: Config) -> None:
    logging.debug(f"Gitlab base url: {config.base_url}")
    if config.token:
        logging.debug("Gitlab private token: **HIDDEN**")
    logging.debug(f"Gitlab project ID: {config.project}")
    if config.policy.older_than:
        logging.debug(f"Older than duration: {config.policy.older_than}")


def build_headers(config: Config) -> dict[str, str]:
    headers = {
        "Accept": "application/json",
        "User-Agent": "GitLab registry cleaner",
    }
    if config.token:
        headers["PRIVATE-TOKEN"] = config.token
    return headers


def true_utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def matches(candidate: str, rules: Iterable[re.Pattern]) -> bool:
    """True if any rule is found anywhere in ``candidate``.

    An empty rule list never matches; callers decide what "no rules" means.
    """
    return any(rule.search(candidate) for rule in rules)


def select_repositories(
    repositories: Sequence[Repository], rules: PatternRules
) -> list[Repository]:
    selected = []
    for repository in repositories:
        if rules.repositories and not matches(repository.path, rules.repositories):
            logging.debug(f"Skipped registry repository: {repository.path}")
            continue
        logging.debug(f"Matched registry repository: {repository.path}")
        selected.append(repository)
    return selected


def select_tags(tags: Sequence[Tag], rules: PatternRules) -> list[Tag]:
    matched = []
    for tag in tags:
        if tag.name == LATEST_TAG:
            logging.debug("Skipped the latest tag")
            continue
        if rules.excludes and matches(tag.name, rules.excludes):
            logging.debug(f"Skipped tag because of exclude rule: {tag.name}")
            continue
        if rules.tags and not matches(tag.name, rules.tags):
            logging.debug(f"Skipped tag: {tag.name}")
            continue
        logging.debug(f"Matched tag: {tag.name}")
        matched.append(tag)
    return matched


def needs_cleanup(matched_count: int, policy: RetentionPolicy) -> bool:
    return not (policy.keep_n > 0 and matched_count <= policy.keep_n)


def plan_deletions(
    tags: Sequence[Tag], policy: RetentionPolicy, now: datetime | None = None
) -> list[Tag]:
    """Return the tags to delete, newest first.

    Tags without a creation time are left out. The ``keep_n`` newest tags
    are kept, then tags not older than ``policy.older_than`` are kept.
    """
    now = now or true_utcnow()
    candidates = sorted(
        (tag for tag in tags if tag.created_at is not None),
        key=lambda tag: tag.created_at,  # type: ignore
        reverse=True,
    )

    if policy.keep_n > 0:
        logging.debug(f"The latest {policy.keep_n} matched tags will be kept")
        candidates = candidates[policy.keep_n :]

    if not policy.older_than:
        return candidates

    to_delete = []
    for tag in candidates:
        age = now - tag.created_at  # type: ignore
        if age > policy.older_than:
            to_delete.append(tag)
        else:
            logging.debug(f"Tag {tag.name} will be kept, it was created only {age} ago")
    return to_delete


def make_repo_stats(
    repository: Repository,
    tags: Sequence[Tag],
    matched: Sequence[Tag],
    to_delete: Sequence[Tag],
    outcomes: Sequence[DeletionOutcome],
) -> RepositoryInfo:
    return RepositoryInfo(
        name=repository.path,
        tags_total_count=len(tags),
        tags_matched_count=len(matched),
        tags_to_delete=[{tag.name: tag.created_at} for tag in to_delete],
        tags_to_delete_count=len(to_delete),
        attempted=len(to_delete),
        succeeded=sum(
            1 for outcome in outcomes if outcome.status == DeletionStatus.DELETED
        ),
        outcomes=list(outcomes),
    )


def write_report(result: CleanupResult, path: Path) -> None:
    info = {}
    if path.exists():
        with open(path, "r") as f:
            try:
                info = json.load(f)
            except json.JSONDecodeError as err:
                logging.warning(
                    f"An error occurred while parsing the previous report: {err}. Seems it was blank"
                )
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        info[result.project] = result.model_dump(mode="json")
        json.dump(info, f, indent=4, default=str)
