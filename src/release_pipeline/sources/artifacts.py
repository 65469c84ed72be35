"""Artifact resolution.

The builder contract is ``get_artifact(ref) -> ArtifactInfo``: whether the
artifact exists and its stable content digest. Two runs with the same
digest deploy identical content.
"""

import asyncio
from typing import Dict, Mapping, Optional, Protocol, Tuple, runtime_checkable

import httpx
import structlog
from pydantic import BaseModel

from release_pipeline.deploy.retry import RetryPolicy

logger = structlog.get_logger(__name__)

MANIFEST_MEDIA_TYPES = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class ArtifactResolutionError(Exception):
    """Raised when the builder / registry could not answer.

    Attributes:
        artifact_ref: Reference being resolved.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        artifact_ref: str,
        original_error: Optional[Exception] = None,
    ):
        self.artifact_ref = artifact_ref
        self.original_error = original_error
        super().__init__(message)


class ArtifactInfo(BaseModel):
    exists: bool
    digest: Optional[str] = None


@runtime_checkable
class ArtifactResolver(Protocol):
    async def get_artifact(self, artifact_ref: str) -> ArtifactInfo:
        ...


def split_reference(artifact_ref: str) -> Tuple[str, str]:
    """Split an image reference into (repository, tag-or-digest).

    The registry host, if present, is dropped from the repository.

    Example:
        >>> split_reference("registry.local:5000/team/app@sha256:ab12")
        ('team/app', 'sha256:ab12')
        >>> split_reference("team/app:1.4.0")
        ('team/app', '1.4.0')
    """
    if "@" in artifact_ref:
        name, reference = artifact_ref.split("@", 1)
    else:
        last_slash = artifact_ref.rfind("/")
        colon = artifact_ref.rfind(":")
        if colon > last_slash:
            name, reference = artifact_ref[:colon], artifact_ref[colon + 1 :]
        else:
            name, reference = artifact_ref, "latest"

    parts = name.split("/")
    if len(parts) > 1 and (
        "." in parts[0] or ":" in parts[0] or parts[0] == "localhost"
    ):
        parts = parts[1:]
    repository = "/".join(parts)
    if not repository or not reference:
        raise ValueError(f"malformed artifact reference: {artifact_ref!r}")
    return repository, reference


class RegistryArtifactResolver:
    """Resolves image references against an OCI distribution registry.

    Issues ``HEAD /v2/<name>/manifests/<reference>`` and reads the
    ``Docker-Content-Digest`` header.
    """

    def __init__(
        self,
        registry_url: str,
        token: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.registry_url = registry_url.rstrip("/")
        self.token = token
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": MANIFEST_MEDIA_TYPES}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.registry_url, headers=headers, timeout=self.timeout
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def get_artifact(self, artifact_ref: str) -> ArtifactInfo:
        """Look up an artifact's digest.

        Raises:
            ValueError: If the reference is malformed.
            ArtifactResolutionError: If the registry kept failing.
        """
        repository, reference = split_reference(artifact_ref)
        path = f"/v2/{repository}/manifests/{reference}"

        last_error: Optional[Exception] = None
        for attempt in range(self.retry_policy.max_attempts):
            try:
                response = await self.client.head(
                    path, headers={"Accept": MANIFEST_MEDIA_TYPES}
                )
            except httpx.RequestError as e:
                last_error = e
            else:
                if response.status_code == 404:
                    return ArtifactInfo(exists=False)
                if response.status_code == 200:
                    digest = response.headers.get("Docker-Content-Digest")
                    if not digest and reference.startswith("sha256:"):
                        digest = reference
                    if not digest:
                        raise ArtifactResolutionError(
                            "registry did not report a content digest",
                            artifact_ref,
                        )
                    return ArtifactInfo(exists=True, digest=digest)
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    raise ArtifactResolutionError(
                        f"registry returned HTTP {response.status_code}",
                        artifact_ref,
                    )
                last_error = httpx.HTTPStatusError(
                    f"HTTP {response.status_code}",
                    request=response.request,
                    response=response,
                )

            logger.warning(
                "Registry lookup failed",
                artifact_ref=artifact_ref,
                attempt=attempt + 1,
                error=str(last_error),
            )
            if attempt + 1 < self.retry_policy.max_attempts:
                await asyncio.sleep(self.retry_policy.backoff(attempt))

        raise ArtifactResolutionError(
            f"registry unavailable after {self.retry_policy.max_attempts} attempts",
            artifact_ref,
            original_error=last_error,
        )


class StaticArtifactResolver:
    """Resolver backed by a fixed mapping, or by digests embedded in refs.

    Digest-pinned references (``name@sha256:...``) always exist unless
    ``known`` is given, in which case only mapped references exist.
    """

    def __init__(self, known: Optional[Mapping[str, str]] = None):
        self._known: Optional[Dict[str, str]] = dict(known) if known is not None else None

    async def get_artifact(self, artifact_ref: str) -> ArtifactInfo:
        if self._known is not None:
            digest = self._known.get(artifact_ref)
            return ArtifactInfo(exists=digest is not None, digest=digest)
        if "@" in artifact_ref:
            return ArtifactInfo(exists=True, digest=artifact_ref.rsplit("@", 1)[1])
        return ArtifactInfo(exists=False)
