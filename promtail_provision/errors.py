"""
Error taxonomy for a reconciliation pass.

Every error aborts the remainder of the pass. The caller re-runs the pass
after fixing the reported cause.
"""


class ProvisionError(Exception):
    """Base class for all provisioning errors"""
    pass


class ConfigError(ProvisionError):
    """Desired state or configuration fragment is invalid"""
    pass


class VerificationError(ProvisionError):
    """Downloaded artifact failed checksum or archive validation"""
    pass


class TransportError(ProvisionError):
    """Download or package manager failure, safe to retry on the next pass"""
    pass


class ServiceError(ProvisionError):
    """Service manager operation failed"""
    pass


class FilesystemError(ProvisionError):
    """A local file or directory could not be read or written"""
    pass
