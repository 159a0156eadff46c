import copy
import datetime
import hashlib
import hmac
import logging
from typing import Dict, List, NamedTuple, Tuple, Union
from urllib.parse import parse_qsl, quote, urlsplit

from requests import PreparedRequest

from aws_sign4.errors import (
    ConstructionError,
    FormatError,
    MalformedRequestError,
    ReuseError,
    SigningError,
    TimeParseError,
)
from aws_sign4.snapshot import RequestSnapshot, ReusableBody

__all__ = [
    "ALGORITHM",
    "AMZ_DATE_FORMAT",
    "DATE_STAMP_FORMAT",
    "AwsRequestSigner",
    "CanonicalRequest",
    "ConstructionError",
    "CredentialScope",
    "Credentials",
    "FormatError",
    "MalformedRequestError",
    "RequestSnapshot",
    "ReusableBody",
    "ReuseError",
    "SigningError",
    "TimeParseError",
    "auth_header_value",
    "canonical_request",
    "credential_scope",
    "format_amz_date",
    "parse_amz_date",
    "parse_credential_scope",
    "parse_http_date",
    "sign",
    "sign_string_to_sign",
    "signing_key",
    "string_to_sign",
    "trim_header_value",
]

logger = logging.getLogger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"
AWS4_REQUEST = "aws4_request"
AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"
HTTP_DATE_FORMAT = "%a, %d %b %Y %H:%M:%S GMT"
DATE_STAMP_FORMAT = "%Y%m%d"
EMPTY_SHA256 = hashlib.sha256(b"").hexdigest()


class Credentials(NamedTuple):
    access_key_id: str
    secret_access_key: str

    def __repr__(self) -> str:
        return "Credentials(access_key_id={!r}, secret_access_key='***')".format(
            self.access_key_id
        )


class CanonicalRequest(NamedTuple):
    canonical_request: str
    # Semicolon separated list of the header names in the canonical request.
    signed_headers: str


class CredentialScope(NamedTuple):
    date: str
    region: str
    service: str
    terminator: str = AWS4_REQUEST

    def __str__(self) -> str:
        return "/".join(self)


def _as_utc(timestamp: datetime.datetime) -> datetime.datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=datetime.timezone.utc)
    return timestamp.astimezone(datetime.timezone.utc)


def format_amz_date(timestamp: datetime.datetime) -> str:
    return _as_utc(timestamp).strftime(AMZ_DATE_FORMAT)


def parse_amz_date(value: str) -> datetime.datetime:
    """
    Parse an x-amz-date value (f.e. `20110909T233600Z`).

    :raises TimeParseError: If the value is not in the expected format.
    """
    try:
        timestamp = datetime.datetime.strptime(value, AMZ_DATE_FORMAT)
    except ValueError as exc:
        raise TimeParseError("Invalid x-amz-date value {!r}".format(value)) from exc
    return timestamp.replace(tzinfo=datetime.timezone.utc)


def parse_http_date(value: str) -> datetime.datetime:
    """
    Parse an RFC 1123 Date header value (f.e. `Mon, 09 Sep 2011 23:36:00 GMT`).
    Only the fixed GMT form is accepted, not the obsolete RFC 850 or
    asctime forms.

    :raises TimeParseError: If the value is not a valid HTTP date.
    """
    try:
        timestamp = datetime.datetime.strptime(value, HTTP_DATE_FORMAT)
    except ValueError as exc:
        raise TimeParseError("Invalid Date value {!r}".format(value)) from exc
    return timestamp.replace(tzinfo=datetime.timezone.utc)


def trim_header_value(value: str) -> str:
    """
    Trim a header value for use in a canonical request. Leading and
    trailing whitespace is removed and runs of whitespace are collapsed to
    a single space, except between double quotes.

    :param value: The raw header value.
    :return: The trimmed header value.
    """
    in_quote = False
    prior_whitespace = False
    trimmed = []

    for char in value.strip():
        if not in_quote and char.isspace():
            if not prior_whitespace:
                trimmed.append(" ")
            prior_whitespace = True
        else:
            if char == '"':
                in_quote = not in_quote
            prior_whitespace = False
            trimmed.append(char)

    return "".join(trimmed)


def _split_target(target: str) -> Tuple[str, str]:
    if target.startswith("/"):
        path, _, query = target.partition("?")
        return path, query
    if "://" in target:
        # Absolute form, as sent to a proxy.
        parsed_url = urlsplit(target)
        return parsed_url.path or "/", parsed_url.query
    raise ValueError("not an absolute path or URL")


def _get_canonical_path(path: str) -> str:
    """
    Lexically clean a request path: empty and `.` segments are dropped and
    `..` removes the preceding segment. A trailing slash is kept.
    """
    if path == "/":
        return path

    segments: List[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if segments:
                segments.pop()
            continue
        segments.append(segment)

    cleaned = "/" + "/".join(segments)
    if path.endswith("/") and not cleaned.endswith("/"):
        cleaned += "/"
    return cleaned


def _get_canonical_query(query: str) -> str:
    """
    Encode every key and value of a query string independently and sort
    the pairs by encoded key, then by encoded value. Escapes that are not
    valid UTF-8 keep their original bytes.
    """
    return "&".join(
        "{}={}".format(key, value)
        for key, value in sorted(
            (
                quote(key, safe="~", errors="surrogateescape"),
                quote(value, safe="~", errors="surrogateescape"),
            )
            for key, value in parse_qsl(
                query, keep_blank_values=True, errors="surrogateescape"
            )
        )
    )


def _get_canonical_headers(lines: List[str]) -> List[Tuple[str, str]]:
    """
    Collect the headers of a request. Names are lowercased, values trimmed
    and repeated headers joined by a comma in the order they appear.

    :return: The canonical headers sorted by name.
    """
    headers: Dict[str, str] = {}
    for line in lines:
        if line == "":
            break
        name, sep, value = line.partition(":")
        if not sep:
            continue
        name = name.lower()
        value = trim_header_value(value)
        if name in headers:
            headers[name] += "," + value
        else:
            headers[name] = value
    return sorted(headers.items())


def _get_body(lines: List[str]) -> bytes:
    try:
        blank_index = lines.index("")
    except ValueError:
        return b""
    return "\r\n".join(lines[blank_index + 1 :]).encode("utf-8", "surrogateescape")


def canonical_request(request: Union[str, bytes]) -> CanonicalRequest:
    """
    Build the canonical request from a serialized HTTP request.

    :param request: The request as written on the wire (CRLF line endings).
        Bytes are decoded as UTF-8, undecodable bytes in the body are
        hashed unchanged.
    :return: The canonical request text and the signed header list.
    :raises MalformedRequestError: If the request line or target can not be
        parsed.
    """
    if isinstance(request, bytes):
        request = request.decode("utf-8", "surrogateescape")

    if not request:
        raise MalformedRequestError("Not enough data in the request")

    lines = request.split("\r\n")

    request_line = lines[0].split(" ")
    if len(request_line) < 3:
        raise MalformedRequestError(
            "Not enough data in the first line of request: {!r}".format(lines[0])
        )

    method, target = request_line[0], request_line[1]
    try:
        path, query = _split_target(target)
    except ValueError as exc:
        raise MalformedRequestError(
            "Invalid request target {!r}: {}".format(target, exc)
        ) from exc

    headers = _get_canonical_headers(lines[1:])
    signed_headers = ";".join(key for key, _ in headers)
    body = _get_body(lines)

    text = "\n".join(
        (
            method.upper(),
            _get_canonical_path(path),
            _get_canonical_query(query),
            *("{}:{}".format(key, value) for key, value in headers),
            "",  # Extra newline after canonical headers.
            signed_headers,
            hashlib.sha256(body).hexdigest() if body else EMPTY_SHA256,
        )
    )
    return CanonicalRequest(text, signed_headers)


def credential_scope(
    timestamp: datetime.datetime, region: str, service: str
) -> str:
    """
    Get the credential scope for a signature.

    :param timestamp: The signing time. The date is taken in UTC.
    :param region: The AWS region.
    :param service: The AWS service.
    :return: The scope, f.e. `20110909/us-east-1/iam/aws4_request`.
    """
    date = _as_utc(timestamp).strftime(DATE_STAMP_FORMAT)
    return str(CredentialScope(date, region, service))


def parse_credential_scope(scope: str) -> CredentialScope:
    """
    Split a credential scope back into its components.

    :raises FormatError: If the scope doesn't consist of exactly four
        components.
    """
    parts = scope.split("/")
    if len(parts) != 4:
        raise FormatError("Expected 4 elements in credential scope {!r}".format(scope))
    return CredentialScope(*parts)


def string_to_sign(
    canonical_request: str, scope: str, timestamp: datetime.datetime
) -> str:
    return "\n".join(
        (
            ALGORITHM,
            format_amz_date(timestamp),
            scope,
            hashlib.sha256(canonical_request.encode("utf-8", "surrogateescape")).hexdigest(),
        )
    )


def signing_key(secret_access_key: str, date: str, region: str, service: str) -> bytes:
    """
    Derive the signing key for a credential scope.

    :param secret_access_key: The AWS secret access key.
    :param date: The date stamp of the scope (yyyymmdd).
    :param region: The region of the scope.
    :param service: The service of the scope.
    :return: The 32 byte signing key.
    """
    key = ("AWS4" + secret_access_key).encode("utf-8")
    for element in (date, region, service, AWS4_REQUEST):
        key = hmac.new(key, element.encode("utf-8"), hashlib.sha256).digest()
    return key


def sign_string_to_sign(string_to_sign: str, secret_access_key: str) -> str:
    """
    Sign a string to sign. The key is derived from the credential scope
    found on its third line.

    :param string_to_sign: The string to sign as returned by string_to_sign.
    :param secret_access_key: The AWS secret access key.
    :return: The hex-encoded signature.
    :raises FormatError: If the string to sign is malformed.
    """
    lines = string_to_sign.split("\n")
    if len(lines) != 4:
        raise FormatError("Expected 4 lines in string to sign, got {}".format(len(lines)))

    scope = parse_credential_scope(lines[2])
    key = signing_key(secret_access_key, scope.date, scope.region, scope.service)
    return hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


def auth_header_value(
    signature: str, access_key_id: str, scope: str, canonical: CanonicalRequest
) -> str:
    return (
        "{algorithm} "
        "Credential={access_key_id}/{scope}, "
        "SignedHeaders={signed_headers}, "
        "Signature={signature}"
    ).format(
        algorithm=ALGORITHM,
        access_key_id=access_key_id,
        scope=scope,
        signed_headers=canonical.signed_headers,
        signature=signature,
    )


class AwsRequestSigner:
    algorithm = ALGORITHM

    def __init__(
        self, region: str, access_key_id: str, secret_access_key: str, service: str
    ) -> None:
        """
        Create a new instance of the AwsRequestSigner.

        Use the sign method to add an Authorization header to a
        RequestSnapshot.

        :param region: The AWS region to connect to.
        :param access_key_id: The AWS access key id to use for authentication.
        :param secret_access_key: The AWS secret access key to use for authentication.
        :param service: The AWS service to generate signatures for.
        """
        self.region = region
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.service = service

    @classmethod
    def from_credentials(
        cls, region: str, credentials: Credentials, service: str
    ) -> "AwsRequestSigner":
        return cls(
            region, credentials.access_key_id, credentials.secret_access_key, service
        )

    @property
    def credentials(self) -> Credentials:
        return Credentials(self.access_key_id, self.secret_access_key)

    def _get_timestamp(self, snapshot: RequestSnapshot) -> datetime.datetime:
        """
        Internal method. Determine the signing time of a request. An
        existing Date header wins over an x-amz-date header. If neither is
        present, the current time is used and added as x-amz-date header.

        :raises TimeParseError: If an existing header can not be parsed.
        """
        date = snapshot.headers.get("Date")
        if date:
            logger.debug("Using signing time from Date header: %s", date)
            return parse_http_date(date)

        amz_date = snapshot.headers.get("X-Amz-Date")
        if amz_date:
            logger.debug("Using signing time from X-Amz-Date header: %s", amz_date)
            return parse_amz_date(amz_date)

        timestamp = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
        snapshot.headers["X-Amz-Date"] = format_amz_date(timestamp)
        return timestamp

    def sign(self, snapshot: RequestSnapshot) -> PreparedRequest:
        """
        Sign a request. The Authorization header is set on the snapshot,
        replacing any previous one. The snapshot's headers are only changed
        once the signature has been computed.

        :param snapshot: The request to sign.
        :return: The signed request, ready to be sent by a requests session.
        """
        # Sign a copy without the previous signature. The body is shared,
        # serializing rewinds it.
        unsigned = copy.copy(snapshot)
        unsigned.headers = snapshot.headers.copy()
        unsigned.headers.discard("Authorization")

        timestamp = self._get_timestamp(unsigned)

        canonical = canonical_request(unsigned.to_bytes())
        logger.debug("CanonicalRequest:\n%s", canonical.canonical_request)

        scope = credential_scope(timestamp, self.region, self.service)
        to_sign = string_to_sign(canonical.canonical_request, scope, timestamp)
        logger.debug("StringToSign:\n%s", to_sign)

        signature = sign_string_to_sign(to_sign, self.secret_access_key)

        if "X-Amz-Date" not in snapshot.headers and "X-Amz-Date" in unsigned.headers:
            snapshot.headers["X-Amz-Date"] = unsigned.headers["X-Amz-Date"]
        if "Authorization" in snapshot.headers:
            logger.debug("Replacing existing Authorization header")
        snapshot.headers["Authorization"] = auth_header_value(
            signature, self.access_key_id, scope, canonical
        )
        return snapshot.to_prepared_request()


def sign(
    snapshot: RequestSnapshot,
    access_key_id: str,
    secret_access_key: str,
    region: str,
    service: str,
) -> PreparedRequest:
    """
    Sign a request snapshot. See AwsRequestSigner.sign.
    """
    return AwsRequestSigner(region, access_key_id, secret_access_key, service).sign(
        snapshot
    )
