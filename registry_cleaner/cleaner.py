import asyncio
import logging
import sys

import httpx

from registry_cleaner.api import (
    build_session,
    delete_tag,
    fetch_created_at,
    list_repositories,
    list_tags,
)
from registry_cleaner.config import Config
from registry_cleaner.exceptions import DeleteError, FetchError, ListError
from registry_cleaner.models import (
    CleanupResult,
    DeletionOutcome,
    DeletionStatus,
    Repository,
    RepositoryInfo,
    Tag,
)
from registry_cleaner.utils import (
    log_settings,
    make_repo_stats,
    needs_cleanup,
    plan_deletions,
    select_repositories,
    select_tags,
    true_utcnow,
)


async def update_timestamp(
    session: httpx.AsyncClient,
    repository: Repository,
    tag: Tag,
    limiter: asyncio.Semaphore,
    config: Config,
) -> list[str]:
    async with limiter:
        try:
            tag.created_at = await fetch_created_at(session, repository, tag, config)
        except FetchError as err:
            logging.error(str(err))
            return [str(err)]
    return []


async def update_all_timestamps(
    session: httpx.AsyncClient,
    repository: Repository,
    tags: list[Tag],
    limiter: asyncio.Semaphore,
    config: Config,
) -> list[str]:
    errors_total = []
    tag_details_tasks: list[asyncio.Task[list[str]]] = [
        asyncio.create_task(update_timestamp(session, repository, tag, limiter, config))
        for tag in tags
    ]
    for completed_task in asyncio.as_completed(tag_details_tasks):
        errors_total.extend(await completed_task)
    return errors_total


async def delete_all_tags(
    session: httpx.AsyncClient,
    repository: Repository,
    tags: list[Tag],
    config: Config,
) -> list[DeletionOutcome]:
    """Delete ``tags`` one by one in the given order.

    A failed deletion is recorded and the next tag is processed. In dry-run
    mode nothing is sent to the registry and every tag is marked skipped.
    """
    outcomes = []
    for tag in tags:
        if config.dry_run:
            logging.info(f"[Dry run] {tag.path} will be deleted")
            outcomes.append(
                DeletionOutcome(tag=tag.name, path=tag.path, status=DeletionStatus.SKIPPED)
            )
            continue
        try:
            await delete_tag(session, repository, tag, config)
        except DeleteError as err:
            logging.error(str(err))
            outcomes.append(
                DeletionOutcome(
                    tag=tag.name,
                    path=tag.path,
                    status=DeletionStatus.FAILED,
                    error=str(err),
                )
            )
            continue
        logging.info(f"Deleted {tag.path}")
        outcomes.append(
            DeletionOutcome(tag=tag.name, path=tag.path, status=DeletionStatus.DELETED)
        )
    return outcomes


async def cleanup_repository(
    session: httpx.AsyncClient,
    repository: Repository,
    tags: list[Tag],
    limiter: asyncio.Semaphore,
    config: Config,
) -> tuple[RepositoryInfo, list[str]]:
    policy = config.policy
    matched = select_tags(tags, config.rules)
    logging.debug(f"Found {len(matched)} matched tags in {repository.path}")

    if not needs_cleanup(len(matched), policy):
        logging.info(
            f"Skip because of less matched tags ({len(matched)}) than keep N ({policy.keep_n})"
        )
        return make_repo_stats(repository, tags, matched, [], []), []

    errors = await update_all_timestamps(session, repository, matched, limiter, config)
    to_delete = plan_deletions(matched, policy)
    logging.debug(f"{len(to_delete)} tags in {repository.path} will be deleted")

    outcomes = await delete_all_tags(session, repository, to_delete, config)
    errors.extend(o.error for o in outcomes if o.error)
    stats = make_repo_stats(repository, tags, matched, to_delete, outcomes)
    logging.info(f"{stats.tally} tags have been deleted in {repository.path}")
    return stats, errors


async def cleanup_registry(
    config: Config, transport: httpx.AsyncBaseTransport | None = None
) -> CleanupResult:
    started_at = true_utcnow()
    errors_total: list[str] = []
    repo_stats: list[RepositoryInfo] = []
    log_settings(config)

    async with build_session(config, transport) as session:
        try:
            repositories = await list_repositories(session, config)
        except ListError as err:
            logging.critical(str(err))
            logging.info("Check your configuration, urls, proxies and try again.")
            sys.exit(1)

        selected = select_repositories(repositories, config.rules)
        if not selected:
            logging.critical("There is no registry repository found.")
            sys.exit(1)

        limiter = asyncio.Semaphore(config.max_concurrent_requests)
        for repository in selected:
            logging.info(f"Searching in {repository.path}")
            try:
                tags = await list_tags(session, repository, config)
            except ListError as err:
                logging.error(str(err))
                errors_total.append(str(err))
                continue
            stats, errors = await cleanup_repository(
                session, repository, tags, limiter, config
            )
            repo_stats.append(stats)
            errors_total.extend(errors)

    return CleanupResult(
        project=config.project,
        dry_run=config.dry_run,
        started_at=started_at,
        finished_at=true_utcnow(),
        success=not errors_total,
        errors=errors_total,
        repo_stats=repo_stats,
    )
