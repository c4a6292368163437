from __future__ import annotations


class CrateApplyError(Exception):
    """Base class for every error raised by crate-apply."""


class InvalidSpecifierError(CrateApplyError, ValueError):
    """A package specifier is not `name`, `name=version` or `*`."""


class ResolutionError(CrateApplyError):
    """A specifier could not be turned into a concrete target."""


class PackageNotFoundError(ResolutionError):
    """The registry does not know the package."""


class UnknownVersionError(ResolutionError):
    """The registry knows the package but not the requested version."""


class RegistryError(CrateApplyError):
    """The registry could not be queried (transport or protocol error)."""


class FetchError(CrateApplyError):
    """Source for a target could not be obtained."""


class StoreError(CrateApplyError):
    """The result store could not be read or written."""


class DuplicateResultError(StoreError):
    """A result for the same key and mode is already committed."""


class SystemicFailure(CrateApplyError):
    """The run cannot continue; aborts with a non-zero exit."""


class CircuitBreakerTripped(SystemicFailure):
    """Too many consecutive crashed or timed out attempts."""
