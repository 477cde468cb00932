"""
httpx implementation of the remote calls the backup needs: list a page of
files for a category, package a set of files into a zip archive, and issue
a fresh access token.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx

from resilience import ResilientExecutor, RetryEvent, log_retry_event

log = logging.getLogger(__name__)


## constants
DEFAULT_BASE_URL = 'https://btcloud.bt.com'
BROWSE_URL_TPL = '{base}/dv/api/user/{user_id}/browse/{category_path}'
ZIP_URL_TPL = '{base}/dv/api/user/{user_id}/operations/zip'
TOKEN_URL_TPL = '{base}/web/app/accessToken'
LISTING_MEDIA_TYPE = 'application/vnd.newbay.dv-1.20+json'
USER_AGENT = 'cloud-vault-backup/1.0'

DEFAULT_TIMEOUT: httpx.Timeout = httpx.Timeout(connect=30.0, read=60.0, write=60.0, pool=30.0)
ARCHIVE_TIMEOUT: httpx.Timeout = httpx.Timeout(30 * 60.0, connect=30.0)


class AuthenticationRejectedError(Exception):
    """
    The server refused the token (HTTP 401). Not retried; the caller has to obtain a new token.
    """


class CredentialRelocatedError(Exception):
    """
    The token endpoint answered with a permanent redirect; the seed token is dead.
    """


@dataclass(frozen=True)
class RemoteFile:
    repository: str
    parent_path: str
    name: str

    @property
    def identifier(self) -> str:
        return f'{self.repository}:{self.parent_path}/{self.name}'


@dataclass(frozen=True)
class ListedPage:
    items: list[RemoteFile]
    next_cursor: str | None


## response helpers -------------------------------------------------


def is_retryable_response(resp: httpx.Response) -> bool:
    """
    Non-success responses are retried, except 401 (stale token) and 301 (endpoint moved).
    """
    if resp.is_success:
        return False
    return resp.status_code not in (httpx.codes.UNAUTHORIZED, httpx.codes.MOVED_PERMANENTLY)


def raise_for_outcome(resp: httpx.Response) -> None:
    if resp.status_code == httpx.codes.UNAUTHORIZED:
        raise AuthenticationRejectedError(f'token rejected by ``{resp.request.url}``')
    resp.raise_for_status()


async def _close_response(resp: httpx.Response) -> None:
    await resp.aclose()


def _get_ci(data: object, key: str) -> object:
    """
    Case-insensitive dict lookup; returns None for non-dicts or missing keys.
    """
    if not isinstance(data, dict):
        return None
    if key in data:
        return data[key]
    lowered: str = key.lower()
    for k, v in data.items():
        if isinstance(k, str) and k.lower() == lowered:
            return v
    return None


def _text_value(data: object) -> str | None:
    """
    Values in the listing JSON are wrapped like ``{"$": "value"}``.
    """
    val: object = _get_ci(data, '$')
    return val if isinstance(val, str) else None


def parse_listing(payload: object) -> ListedPage:
    """
    Decodes `filesHolder.files.file[]` and `filesHolder.cursor` from the browse response.
    Raises ValueError for an entry missing its repository, parent path or name,
    so the page fails instead of being archived without that file.
    """
    holder: object = _get_ci(payload, 'filesHolder')
    files_block: object = _get_ci(holder, 'files')
    raw_files: object = _get_ci(files_block, 'file') or []
    if isinstance(raw_files, dict):
        raw_files = [raw_files]
    items: list[RemoteFile] = []
    for entry in raw_files if isinstance(raw_files, list) else []:
        repository: str | None = _text_value(_get_ci(entry, 'repository'))
        parent_path: str | None = _text_value(_get_ci(entry, 'parentPath'))
        name: str | None = _text_value(_get_ci(entry, 'name'))
        if repository is None or parent_path is None or name is None:
            raise ValueError(f'listing entry without repository/parentPath/name, ``{entry!r}``')
        items.append(RemoteFile(repository, parent_path, name))
    next_cursor: str | None = _text_value(_get_ci(holder, 'cursor')) or None
    return ListedPage(items, next_cursor)


## gateway ----------------------------------------------------------


class CloudGateway:
    """
    Performs the listing, archive and token calls over one shared httpx.AsyncClient.
    - Gives each call-site its own ResilientExecutor so retries are logged per operation.
    - Streams archive payloads instead of buffering them; the zip call gets a long timeout.
    - Maps 401 to AuthenticationRejectedError and a moved token endpoint to CredentialRelocatedError.
    - Holds no token state; callers pass the current token into every call.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        user_id: str,
        repositories: list[str] | None = None,
        base_url: str = DEFAULT_BASE_URL,
        on_retry: Callable[[RetryEvent], None] = log_retry_event,
        listing_executor: ResilientExecutor[httpx.Response] | None = None,
        archive_executor: ResilientExecutor[httpx.Response] | None = None,
        token_executor: ResilientExecutor[httpx.Response] | None = None,
    ) -> None:
        self.client: httpx.AsyncClient = client
        self.user_id: str = user_id
        self.repositories: list[str] = list(repositories or [])
        self.base_url: str = base_url.rstrip('/')
        self.listing_executor: ResilientExecutor[httpx.Response] = listing_executor or ResilientExecutor(
            'list files', should_retry=is_retryable_response, discard=_close_response, on_retry=on_retry
        )
        self.archive_executor: ResilientExecutor[httpx.Response] = archive_executor or ResilientExecutor(
            'get zip', should_retry=is_retryable_response, discard=_close_response, on_retry=on_retry
        )
        self.token_executor: ResilientExecutor[httpx.Response] = token_executor or ResilientExecutor(
            'refresh token', should_retry=is_retryable_response, discard=_close_response, on_retry=on_retry
        )

    def _auth_headers(self, token: str) -> dict[str, str]:
        return {
            'Authorization': f'NWB token="{token}"; authVersion="1.0"',
            'Cookie': f'NWB={token}',
        }

    async def list_page(
        self, category_path: str, start: int, count: int, cursor: str | None, token: str
    ) -> ListedPage:
        url: str = BROWSE_URL_TPL.format(base=self.base_url, user_id=self.user_id, category_path=category_path)
        params: list[tuple[str, str | int]] = [
            ('sort', 'creationdate'),
            ('order', 'desc'),
            ('start', start),
            ('count', count),
        ]
        params.extend(('repository', repo) for repo in self.repositories)
        if cursor is not None:
            params.append(('cursor', cursor))
        headers: dict[str, str] = {'Accept': LISTING_MEDIA_TYPE, **self._auth_headers(token)}
        log.debug(f'listing url, ``{url}``; start, ``{start}``; count, ``{count}``')

        resp: httpx.Response = await self.listing_executor.execute(
            lambda: self.client.get(url, params=params, headers=headers, timeout=DEFAULT_TIMEOUT)
        )
        raise_for_outcome(resp)
        return parse_listing(resp.json())

    @asynccontextmanager
    async def open_archive(self, identifiers: list[str], token: str) -> AsyncIterator[AsyncIterator[bytes]]:
        """
        Asks the server to zip `identifiers` and yields the streamed payload.
        The response is closed when the context exits, whether or not it was fully read.
        """
        url: str = ZIP_URL_TPL.format(base=self.base_url, user_id=self.user_id)
        form: dict[str, str | list[str]] = {
            'repositoryPath': list(identifiers),
            'NWB': token,
            'name': f'Zip{time.time_ns()}',
        }
        headers: dict[str, str] = {'Accept': LISTING_MEDIA_TYPE, 'Cookie': f'NWB={token}'}

        async def send() -> httpx.Response:
            request: httpx.Request = self.client.build_request(
                'POST', url, data=form, headers=headers, timeout=ARCHIVE_TIMEOUT
            )
            return await self.client.send(request, stream=True)

        resp: httpx.Response = await self.archive_executor.execute(send)
        try:
            raise_for_outcome(resp)
            yield resp.aiter_bytes()
        finally:
            await resp.aclose()

    async def issue_credential(self, token: str) -> str:
        url: str = TOKEN_URL_TPL.format(base=self.base_url)
        headers: dict[str, str] = {'Accept': 'text/plain', **self._auth_headers(token)}
        resp: httpx.Response = await self.token_executor.execute(
            lambda: self.client.get(url, headers=headers, timeout=DEFAULT_TIMEOUT)
        )
        if resp.status_code == httpx.codes.MOVED_PERMANENTLY:
            raise CredentialRelocatedError(f'token endpoint moved, ``{resp.headers.get("location", "")}``')
        raise_for_outcome(resp)
        new_token: str = resp.text.strip()
        if not new_token:
            raise ValueError('token endpoint returned an empty token')
        return new_token


def build_client() -> httpx.AsyncClient:
    headers: dict[str, str] = {'user-agent': USER_AGENT}
    limits: httpx.Limits = httpx.Limits(max_keepalive_connections=10, max_connections=10)
    return httpx.AsyncClient(headers=headers, timeout=DEFAULT_TIMEOUT, limits=limits)
