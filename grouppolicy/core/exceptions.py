"""Exception hierarchy for derivative policy reconciliation."""


class PolicyError(Exception):
    """Base exception for policy-related errors"""


class ResolutionError(PolicyError):
    """Group data could not be resolved into concrete rules"""


class PolicyStoreError(PolicyError):
    """Error writing or deleting a policy in the store"""


class StatusWriteError(PolicyError):
    """Error writing the derivative outcome onto the parent status"""


class PolicyValidationError(PolicyError):
    """Malformed GroupPolicy object"""
