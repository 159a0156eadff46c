__all__ = [
    "SigningError",
    "ConstructionError",
    "ReuseError",
    "MalformedRequestError",
    "TimeParseError",
    "FormatError",
]


class SigningError(Exception):
    """Base class for all errors raised while preparing or signing a request."""


class ConstructionError(SigningError):
    """The request snapshot could not be built (bad URL or unreadable body)."""


class ReuseError(SigningError):
    """The request body can no longer be rewound and serialized again."""


class MalformedRequestError(SigningError):
    """The serialized request could not be parsed into a canonical request."""


class TimeParseError(SigningError, ValueError):
    """A Date or x-amz-date header did not match its expected format."""


class FormatError(SigningError, ValueError):
    """A string to sign or credential scope does not have the expected shape."""
