import io
from typing import Any, BinaryIO, Optional
from urllib.parse import urlsplit, urlunsplit

import requests
from requests.structures import CaseInsensitiveDict
from requests.utils import requote_uri
from urllib3 import HTTPHeaderDict

from aws_sign4.errors import ConstructionError, ReuseError

__all__ = ["RequestSnapshot", "ReusableBody"]

DEFAULT_PORTS = {"http": 80, "https": 443}
METHODS_WITH_BODY = {"POST", "PUT", "PATCH"}


class ReusableBody(io.BytesIO):
    """
    An in-memory request body that can be read, rewound and read again.

    Only bodies of this type survive repeated serialization. Replace a
    snapshot's body with anything else and the next serialization fails
    with a ReuseError.
    """

    def __len__(self) -> int:
        return len(self.getbuffer())


def _drain(source: Any) -> ReusableBody:
    if isinstance(source, ReusableBody):
        source.seek(0)
        return source

    if isinstance(source, str):
        data = source.encode("utf-8")
    elif isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
    elif hasattr(source, "read"):
        try:
            data = source.read()
        except OSError as exc:
            raise ConstructionError("Unable to read request body: {}".format(exc)) from exc
        if isinstance(data, str):
            data = data.encode("utf-8")
    else:
        try:
            data = b"".join(
                chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)
                for chunk in source
            )
        except OSError as exc:
            raise ConstructionError("Unable to read request body: {}".format(exc)) from exc
        except TypeError as exc:
            raise ConstructionError(
                "Unsupported request body type: {}".format(type(source).__name__)
            ) from exc

    return ReusableBody(data)


class RequestSnapshot:
    def __init__(self, method: str, url: str, body: Any = None) -> None:
        """
        Capture a request so it can be serialized as often as needed. The
        body is read completely and kept in memory.

        :param method: The request method.
        :param url: The full URL of the request. Characters that are not
            allowed in a URL (f.e. spaces or non-ASCII) are percent-encoded.
        :param body: The request body. Bytes, a string (encoded as UTF-8),
            a file-like object or an iterable of chunks. `None` for no body.
        :raises ConstructionError: If the URL can not be parsed or reading
            the body fails.
        """
        try:
            url = requote_uri(url)
            parsed_url = urlsplit(url)
            # Accessing the port validates it.
            parsed_url.port
        except (TypeError, ValueError) as exc:
            raise ConstructionError("Invalid URL {!r}: {}".format(url, exc)) from exc

        if parsed_url.scheme not in DEFAULT_PORTS:
            raise ConstructionError(
                "Invalid URL {!r}: unsupported scheme {!r}".format(url, parsed_url.scheme)
            )
        if not parsed_url.hostname:
            raise ConstructionError("Invalid URL {!r}: no host".format(url))

        self.method = method
        self.url = url
        self.headers = HTTPHeaderDict()
        self.body: Optional[ReusableBody] = None
        self.content_length = 0

        if body is not None:
            self.body = _drain(body)
            self.content_length = len(self.body)

    @classmethod
    def from_prepared_request(
        cls, prepared: requests.PreparedRequest
    ) -> "RequestSnapshot":
        """
        Capture an already prepared request. Streamed bodies are read and
        both the snapshot and the prepared request receive their own copy,
        so neither one consumes the other's body.

        :param prepared: The prepared request to capture.
        :return: A new snapshot with the same method, URL, headers and body.
        """
        assert isinstance(prepared.method, str)
        assert isinstance(prepared.url, str)
        snapshot = cls(prepared.method, prepared.url)
        snapshot.headers.extend(prepared.headers)

        body = prepared.body
        if body is not None:
            if isinstance(body, str):
                # http.client sends str bodies as ISO-8859-1.
                try:
                    body = body.encode("iso-8859-1")
                except UnicodeEncodeError as exc:
                    raise ConstructionError(
                        "Request body is not ISO-8859-1 encodable"
                    ) from exc

            snapshot.body = _drain(body)
            snapshot.content_length = len(snapshot.body)

            if not isinstance(prepared.body, (bytes, str)):
                data = snapshot.body.getvalue()
                if "Transfer-Encoding" in prepared.headers:
                    # requests adds a Content-Length to any body with a length.
                    prepared.body = iter([data])
                else:
                    prepared.body = ReusableBody(data)

        return snapshot

    @property
    def host(self) -> str:
        """
        The value of the Host header derived from the URL. The port is
        omitted when it is the default for the scheme.
        """
        parsed_url = urlsplit(self.url)
        netloc = parsed_url.netloc.rpartition("@")[2]
        port = parsed_url.port
        if port is not None and DEFAULT_PORTS.get(parsed_url.scheme) == port:
            netloc = netloc[: netloc.rindex(":")]
        return netloc

    @property
    def request_target(self) -> str:
        parsed_url = urlsplit(self.url)
        target = parsed_url.path or "/"
        if parsed_url.query:
            target += "?" + parsed_url.query
        return target

    @property
    def proxy_target(self) -> str:
        parsed_url = urlsplit(self.url)
        return urlunsplit(
            (
                parsed_url.scheme,
                parsed_url.netloc,
                parsed_url.path or "/",
                parsed_url.query,
                "",
            )
        )

    def wire_headers(self) -> HTTPHeaderDict:
        """
        Get the headers in the order they are transmitted: Host first,
        then Content-Length (unless already set or the body is sent with a
        Transfer-Encoding), then everything else in insertion order.
        """
        wire = HTTPHeaderDict()
        wire["Host"] = self.headers.get("Host") or self.host

        if (
            "Content-Length" not in self.headers
            and "Transfer-Encoding" not in self.headers
            and (self.body is not None or self.method.upper() in METHODS_WITH_BODY)
        ):
            wire["Content-Length"] = str(self.content_length)

        for key, value in self.headers.iteritems():
            if key.lower() != "host":
                wire.add(key, value)
        return wire

    def serialize(self, sink: BinaryIO, proxy: bool = False) -> None:
        """
        Write the request in HTTP/1.1 wire format. The body is rewound
        afterwards so the next call produces the exact same bytes.

        :param sink: A binary file-like object to write to.
        :param proxy: Use the absolute URL as request target, as sent to
            an HTTP proxy.
        :raises ReuseError: If the body was replaced by something that can
            not be rewound.
        """
        if self.body is not None and not isinstance(self.body, ReusableBody):
            raise ReuseError(
                "Request body of type {} can not be reused (was the body replaced?)".format(
                    type(self.body).__name__
                )
            )

        target = self.proxy_target if proxy else self.request_target
        lines = ["{} {} HTTP/1.1".format(self.method, target)]
        lines.extend(
            "{}: {}".format(key, value) for key, value in self.wire_headers().iteritems()
        )
        sink.write(("\r\n".join(lines) + "\r\n\r\n").encode("utf-8"))

        if self.body is not None:
            try:
                sink.write(self.body.read())
            finally:
                self.body.seek(0)

    def to_bytes(self, proxy: bool = False) -> bytes:
        buffer = io.BytesIO()
        self.serialize(buffer, proxy)
        return buffer.getvalue()

    def to_prepared_request(self) -> requests.PreparedRequest:
        """
        Convert the snapshot into a request that can be sent with a
        requests session. The body is copied, the snapshot stays usable.

        :return: A prepared request carrying the wire headers and body.
        """
        prepared = requests.PreparedRequest()
        prepared.method = self.method
        prepared.url = self.url
        prepared.headers = CaseInsensitiveDict(self.wire_headers().itermerged())
        prepared.body = self.body.getvalue() if self.body is not None else None
        return prepared

    def __repr__(self) -> str:
        return "<RequestSnapshot [{} {}]>".format(self.method, self.url)
