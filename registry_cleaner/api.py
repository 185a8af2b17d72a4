from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import dateutil.parser
import httpx

from registry_cleaner.config import Config
from registry_cleaner.exceptions import DeleteError, FetchError, ListError
from registry_cleaner.models import Repository, Tag
from registry_cleaner.utils import build_headers

PER_PAGE = 100


def build_session(
    config: Config, transport: httpx.AsyncBaseTransport | None = None
) -> httpx.AsyncClient:
    max_concurrent_requests = config.max_concurrent_requests
    max_keepalive_connections = (max_concurrent_requests // 2) or 1
    return httpx.AsyncClient(
        base_url=config.api_url,
        headers=build_headers(config),
        timeout=config.timeout,
        follow_redirects=True,
        verify=not config.insecure,
        limits=httpx.Limits(
            max_connections=max_concurrent_requests,
            max_keepalive_connections=max_keepalive_connections,
        ),
        proxy=config.proxy,
        transport=transport,
        trust_env=False,
    )


def describe(err: Exception) -> str:
    if isinstance(err, httpx.HTTPStatusError):
        return f"code: {err.response.status_code}, text: {err.response.text}"
    return f"error: {err}"


def repositories_url(config: Config) -> str:
    return f"/projects/{quote(config.project, safe='')}/registry/repositories"


def tag_url(config: Config, repository: Repository, tag: Tag) -> str:
    return (
        f"{repositories_url(config)}/{repository.id}/tags/{quote(tag.name, safe='')}"
    )


async def get_all_pages(session: httpx.AsyncClient, url: str) -> list[dict[str, Any]]:
    """Collect every item of a paginated GitLab listing.

    GitLab reports the following page in ``X-Next-Page``; the header is
    empty on the last page. A body that is not a JSON list raises
    ``ValueError``.
    """
    items: list[dict[str, Any]] = []
    page = "1"
    while page:
        response = await session.get(url, params={"per_page": PER_PAGE, "page": page})
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, list):
            raise ValueError(f"expected a list, got: {response.text[:200]}")
        items.extend(data)
        page = response.headers.get("X-Next-Page", "").strip()
    return items


async def list_repositories(
    session: httpx.AsyncClient, config: Config
) -> list[Repository]:
    try:
        items = await get_all_pages(session, repositories_url(config))
        return [Repository.model_validate(item) for item in items]
    except (httpx.HTTPError, ValueError) as err:
        raise ListError(
            f"List registry repositories of {config.project} failed. {describe(err)}"
        ) from err


async def list_tags(
    session: httpx.AsyncClient, repository: Repository, config: Config
) -> list[Tag]:
    url = f"{repositories_url(config)}/{repository.id}/tags"
    try:
        items = await get_all_pages(session, url)
        return [
            Tag(
                name=item["name"],
                path=item.get("path") or f"{repository.path}:{item['name']}",
                location=item.get("location") or "",
            )
            for item in items
        ]
    except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as err:
        raise ListError(
            f"List registry repository tags failed, path: {repository.path}. {describe(err)}"
        ) from err


async def fetch_created_at(
    session: httpx.AsyncClient, repository: Repository, tag: Tag, config: Config
) -> datetime:
    error = f"Get registry repository tag detail failed, path: {tag.path}."
    try:
        response = await session.get(tag_url(config, repository, tag))
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as err:
        raise FetchError(f"{error} {describe(err)}") from err

    created = data.get("created_at") if isinstance(data, dict) else None
    if not isinstance(created, str) or not created:
        raise FetchError(f"{error} Invalid response: {response.text[:200]}")
    try:
        created_at = dateutil.parser.parse(created)
    except (ValueError, OverflowError) as err:
        raise FetchError(f"{error} Invalid created_at: {created}") from err
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at


async def delete_tag(
    session: httpx.AsyncClient, repository: Repository, tag: Tag, config: Config
) -> None:
    try:
        response = await session.delete(tag_url(config, repository, tag))
        response.raise_for_status()
    except httpx.HTTPError as err:
        raise DeleteError(f"Error deleting {tag.path}. {describe(err)}") from err
