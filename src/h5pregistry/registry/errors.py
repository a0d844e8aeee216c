"""Registry error taxonomy.

Every error carries a stable machine code (E_*) that the HTTP layer puts in
the error envelope and an HTTP status it maps to. Installer and Resolver
raise these synchronously; Mirror Sync collects them per entry.
"""

from __future__ import annotations


class RegistryError(Exception):
    """Base class for registry errors."""

    error_code = "E_REGISTRY"
    code = "registry_error"
    http_status = 500

    def __init__(self, message: str, identity: str | None = None):
        self.identity = identity
        full_message = f"[{identity}] {message}" if identity else message
        super().__init__(full_message)

    def to_dict(self) -> dict:
        """Error envelope used by the API."""
        return {
            "error": self.error_code,
            "code": self.code,
            "message": str(self),
        }


class InvalidPackage(RegistryError):
    """Malformed archive or manifest. Permanent, never retried."""

    error_code = "E_INVALID_PACKAGE"
    code = "invalid_package"
    http_status = 422


class UnresolvedDependency(InvalidPackage):
    """A declared dependency is neither in the archive nor installed."""

    error_code = "E_UNRESOLVED_DEPENDENCY"
    code = "unresolved_dependency"


class DependencyCycleSuspected(RegistryError):
    """Resolution hit the depth cap or found a cycle."""

    error_code = "E_DEPENDENCY_CYCLE"
    code = "dependency_cycle_suspected"
    http_status = 409


class ConflictingReplacement(RegistryError):
    """Different content at an existing identity whose provenance forbids it."""

    error_code = "E_CONFLICTING_REPLACEMENT"
    code = "conflicting_replacement"
    http_status = 409


class UpstreamFetchFailed(RegistryError):
    """Upstream hub unreachable or returned garbage. Retried by the next sync."""

    error_code = "E_UPSTREAM_FETCH"
    code = "upstream_fetch_failed"
    http_status = 502


class ReferencedVersionDeletion(RegistryError):
    """Delete refused: the version still has dependents or content pins."""

    error_code = "E_REFERENCED_VERSION"
    code = "referenced_version_deletion"
    http_status = 409

    def __init__(
        self,
        message: str,
        identity: str | None = None,
        dependents: list[str] | None = None,
        content_ids: list[str] | None = None,
    ):
        self.dependents = dependents or []
        self.content_ids = content_ids or []
        super().__init__(message, identity)


class PackageNotFound(RegistryError):
    """No package version matches the request."""

    error_code = "E_NOT_FOUND"
    code = "package_not_found"
    http_status = 404


class TenantScopeViolation(RegistryError):
    """A tenant tried to act on another tenant's custom package."""

    error_code = "E_TENANT_SCOPE"
    code = "tenant_scope_violation"
    http_status = 403
