"""Resolve `sm://` Secret Manager references used in configuration values."""

from __future__ import annotations

from google.cloud import secretmanager

SM_PREFIX = "sm://"
_SECRET_CACHE: dict[str, str] = {}


class SecretResolutionError(RuntimeError):
    """Raised when a Secret Manager reference cannot be resolved."""


def secret_version_path(reference: str, project_id: str | None) -> str:
    """Expand `name[:version]` or a full resource path into a version path."""
    reference = reference.strip()
    if not reference:
        raise SecretResolutionError("Empty secret reference")
    if reference.startswith("projects/"):
        if "/versions/" in reference:
            return reference
        return f"{reference.rstrip('/')}/versions/latest"
    if not project_id:
        raise SecretResolutionError("project_id is required for shorthand sm:// references")
    secret_id, _, version = reference.partition(":")
    if not secret_id.strip():
        raise SecretResolutionError("Secret identifier missing in sm:// reference")
    return f"projects/{project_id}/secrets/{secret_id.strip()}/versions/{version.strip() or 'latest'}"


def resolve_secret(value: str | None, *, project_id: str | None = None) -> str | None:
    """Return `value`, replacing an `sm://` reference by the secret payload."""
    if value is None or not isinstance(value, str):
        return value
    trimmed = value.strip()
    if not trimmed.startswith(SM_PREFIX):
        return value
    if trimmed in _SECRET_CACHE:
        return _SECRET_CACHE[trimmed]

    path = secret_version_path(trimmed[len(SM_PREFIX):], project_id)
    try:
        client = secretmanager.SecretManagerServiceClient()
        response = client.access_secret_version(name=path)
    except Exception as exc:  # pragma: no cover - network call
        raise SecretResolutionError(f"Failed to access secret {path}: {exc}") from exc
    data = getattr(getattr(response, "payload", None), "data", None)
    if data is None:
        raise SecretResolutionError(f"Secret {path} returned no payload data")
    resolved = data.decode("utf-8")
    _SECRET_CACHE[trimmed] = resolved
    return resolved


def clear_secret_cache() -> None:
    _SECRET_CACHE.clear()


__all__ = [
    "SecretResolutionError",
    "resolve_secret",
    "secret_version_path",
    "clear_secret_cache",
]
