"""GitHub repository import via direct archive download.

Downloads the branch zipball from the code-load host instead of walking
the REST API, so imports are not subject to API rate limits. The default
branch is unknown without an API call; branches are tried in order.
"""

import io
import logging
import re
import zipfile
from dataclasses import dataclass

import httpx

from devhub.app.config import RepositoryConfig, get_settings
from devhub.core.errors import InvalidRepositoryError, RepositoryNotFoundError

logger = logging.getLogger(__name__)

_GITHUB_URL = re.compile(r"github\.com[/:]([^/]+)/([^/]+?)(?:\.git)?/?$")


@dataclass(frozen=True)
class RepositoryRef:
    owner: str
    repo: str


@dataclass(frozen=True)
class ExtractedFile:
    path: str
    content: str


@dataclass(frozen=True)
class RepositoryArchive:
    ref: RepositoryRef
    branch: str
    files: list[ExtractedFile]
    skipped: int


def parse_repository_url(url: str) -> RepositoryRef:
    """Extract owner/repo from an https or ssh GitHub URL.

    Raises:
        InvalidRepositoryError: URL is not a GitHub repository URL.
    """
    match = _GITHUB_URL.search(url.strip())
    if not match:
        raise InvalidRepositoryError(f"Not a GitHub repository URL: {url}")
    return RepositoryRef(owner=match.group(1), repo=match.group(2))


class GitHubArchiveClient:
    """Fetches and unpacks repository archives."""

    def __init__(self, config: RepositoryConfig | None = None) -> None:
        self._config = config or get_settings().repository
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._config.timeout,
                follow_redirects=True,
                headers={"User-Agent": self._config.user_agent},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch(self, ref: RepositoryRef, token: str | None = None) -> RepositoryArchive:
        """Download the archive of the first branch that exists.

        Raises:
            RepositoryNotFoundError: No branch could be downloaded (missing
                repository, or private and no usable token).
        """
        client = await self._get_client()
        headers = {"Authorization": f"token {token}"} if token else {}

        last_status: int | None = None
        for branch in self._config.default_branches:
            url = self._config.archive_url.format(
                owner=ref.owner, repo=ref.repo, branch=branch
            )
            resp = await client.get(url, headers=headers)
            if resp.status_code == 200:
                files, skipped = self.extract(resp.content)
                logger.info(
                    "Downloaded %s/%s@%s (%d files, %d skipped)",
                    ref.owner,
                    ref.repo,
                    branch,
                    len(files),
                    skipped,
                )
                return RepositoryArchive(ref=ref, branch=branch, files=files, skipped=skipped)

            last_status = resp.status_code
            logger.info(
                "Archive %s/%s@%s unavailable (%d), trying next branch",
                ref.owner,
                ref.repo,
                branch,
                resp.status_code,
            )
            if resp.status_code not in (404, 401, 403):
                resp.raise_for_status()

        raise RepositoryNotFoundError(
            f"Repository {ref.owner}/{ref.repo} not found or private (status {last_status})"
        )

    def _should_skip(self, path: str) -> bool:
        return any(pattern in path for pattern in self._config.skip_patterns)

    def extract(self, data: bytes) -> tuple[list[ExtractedFile], int]:
        """Unpack a zipball into text files.

        The archive's single root folder ({repo}-{branch}/) is stripped.
        Skips VCS/dependency folders, oversized entries and anything that
        is not valid UTF-8 text.

        Returns:
            (files, skipped_count)
        """
        files: list[ExtractedFile] = []
        skipped = 0

        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue

                _, sep, path = info.filename.partition("/")
                if not sep or not path:
                    continue

                if self._should_skip(info.filename) or info.file_size > self._config.max_file_size:
                    skipped += 1
                    continue

                try:
                    content = archive.read(info).decode("utf-8")
                except UnicodeDecodeError:
                    skipped += 1
                    continue

                files.append(ExtractedFile(path=path, content=content))

        return files, skipped
