from __future__ import annotations


class UpdateError(Exception):
    pass


class IntegrityError(UpdateError):
    pass


class TrustError(IntegrityError):
    pass


class PathTraversalError(IntegrityError):
    pass


class TransportError(UpdateError):
    pass


class VersionError(UpdateError):
    pass
