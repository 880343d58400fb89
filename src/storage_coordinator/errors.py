"""Exceptions raised by the coordinator core."""


class CoordinatorError(Exception):
    """Base class for coordinator errors."""


class ConfigError(CoordinatorError):
    """Raised when configuration values cannot be parsed."""


class InvalidAgreementTerms(CoordinatorError):
    """Raised when an agreement's capacity or duration cannot produce a price."""


class InvalidAgreementId(CoordinatorError):
    """Raised when a client supplies an agreement id that is not a number."""


class AgreementNotFound(CoordinatorError):
    """Raised when a well-formed agreement id has no record."""


class NoProviderAvailable(CoordinatorError):
    """Raised when no connected provider can take a fragment."""


class FragmentDispatchError(CoordinatorError):
    """Raised when a store request could not be sent to the chosen provider."""


class TransferNotFound(CoordinatorError):
    """Raised when a file id does not match any dispatched fragment."""


class MessageError(CoordinatorError, ValueError):
    """Raised when a control message is malformed."""


__all__ = [
    "AgreementNotFound",
    "ConfigError",
    "CoordinatorError",
    "FragmentDispatchError",
    "InvalidAgreementId",
    "InvalidAgreementTerms",
    "MessageError",
    "NoProviderAvailable",
    "TransferNotFound",
]
