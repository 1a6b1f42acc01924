"""Low level WebHDFS request core

Builds WebHDFS URLs, drives the HTTP transport (including the two step redirect dance used by
CREATE and APPEND) and decodes JSON responses. Interpreting the individual operations is left to
the caller.

For details on the WebHDFS endpoints, see the Hadoop documentation:

- https://hadoop.apache.org/docs/current/hadoop-project-dist/hadoop-hdfs/WebHDFS.html
"""
import abc
import enum
import io
import logging
import os
from contextlib import closing
from http import HTTPStatus
from types import TracebackType
from typing import IO
from typing import Any
from typing import Callable
from typing import Dict
from typing import Iterator
from typing import List
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Type
from typing import Union
from urllib.parse import quote as url_quote
from urllib.parse import urljoin

import requests
import requests.exceptions
import simplejson

DEFAULT_PORT = 50070
WEBHDFS_PATH = "/webhdfs/v1"
UPLOAD_CHUNK_SIZE = 64 * 1024
RESPONSE_CHUNK_SIZE = 64 * 1024
MAX_ERROR_LENGTH = 511
MAX_PARSE_ERROR_LENGTH = 1023

__version__ = "0.1.0"
_logger = logging.getLogger(__name__)

JsonValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]
UploadSource = Union[Callable[[int], bytes], IO[bytes], bytes]
Sink = Callable[[bytes], int]

_TRUE_STRINGS = {"1", "true", "yes", "on"}


class WebHdfsException(Exception):
    """Base class for all errors while talking to a WebHDFS server"""


class WebHdfsTransportError(WebHdfsException):
    """The request never produced a usable HTTP response.

    :param description: What the transport reported
    :param url: The URL being fetched
    """

    def __init__(self, description: str, url: str) -> None:
        super().__init__(_format_error(description, url))
        self.description = description
        self.url = url


class WebHdfsRedirectError(WebHdfsTransportError):
    """The first step of an upload did not point us at a DataNode"""


class WebHdfsHttpException(WebHdfsException):
    """The server answered with a RemoteException.

    :param message: Exception message
    :param exception: Name of the exception
    :param javaClassName: Java class name of the exception
    :param status_code: HTTP status code
    :type status_code: int
    :param kwargs: any extra attributes in case Hadoop adds more stuff
    """

    def __init__(
        self, message: str, exception: str, status_code: int, **kwargs: object
    ) -> None:
        super().__init__(message)
        self.message = message
        self.exception = exception
        self.status_code = status_code
        self.__dict__.update(kwargs)


# NOTE: the following exceptions are referenced using globals() to build _EXCEPTION_CLASSES


class WebHdfsIllegalArgumentException(WebHdfsHttpException):
    pass


class WebHdfsHadoopIllegalArgumentException(WebHdfsIllegalArgumentException):
    pass


class WebHdfsInvalidPathException(WebHdfsHadoopIllegalArgumentException):
    pass


class WebHdfsUnsupportedOperationException(WebHdfsHttpException):
    pass


class WebHdfsSecurityException(WebHdfsHttpException):
    pass


class WebHdfsIOException(WebHdfsHttpException):
    pass


class WebHdfsAccessControlException(WebHdfsIOException):
    pass


class WebHdfsFileAlreadyExistsException(WebHdfsIOException):
    pass


class WebHdfsPathIsNotEmptyDirectoryException(WebHdfsIOException):
    pass


class WebHdfsQuotaExceededException(WebHdfsIOException):
    pass


class WebHdfsNSQuotaExceededException(WebHdfsQuotaExceededException):
    pass


class WebHdfsDSQuotaExceededException(WebHdfsQuotaExceededException):
    pass


# thrown in safe mode
class WebHdfsRemoteException(WebHdfsIOException):
    pass


# thrown in startup mode
class WebHdfsRetriableException(WebHdfsIOException):
    pass


class WebHdfsStandbyException(WebHdfsIOException):
    pass


class WebHdfsSnapshotException(WebHdfsIOException):
    pass


class WebHdfsFileNotFoundException(WebHdfsIOException):
    pass


class WebHdfsRuntimeException(WebHdfsHttpException):
    pass


_EXCEPTION_CLASSES: Dict[str, Type[WebHdfsHttpException]] = {
    name: member
    for name, member in globals().items()
    if isinstance(member, type) and issubclass(member, WebHdfsHttpException)
}


class Verb(enum.Enum):
    GET = "GET"
    PUT = "PUT"
    POST = "POST"
    DELETE = "DELETE"


class WebHdfsConfig(NamedTuple):
    """Where and as whom to talk to WebHDFS.

    :param hdfs_host: NameNode host name
    :param webhdfs_port: NameNode HTTP port. Defaults to 50070; Hadoop 3 moved it to 9870.
    :param use_ssl: Talk https instead of http
    :param hdfs_user: Sent as ``user.name`` when set
    :param token: Delegation token, sent as ``delegation`` when set
    """

    hdfs_host: str = "localhost"
    webhdfs_port: int = DEFAULT_PORT
    use_ssl: bool = False
    hdfs_user: Optional[str] = None
    token: Optional[str] = None

    @classmethod
    def from_host(cls, host: str, **kwargs: Any) -> "WebHdfsConfig":
        """Build a config from a ``host[:port]`` string"""
        if ":" in host:
            name, port = host.rsplit(":", 1)
            if not port.isdigit():
                raise ValueError("Invalid port in {!r}".format(host))
            kwargs["webhdfs_port"] = int(port)
            host = name
        return cls(hdfs_host=host, **kwargs)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "WebHdfsConfig":
        """Build a config from ``WEBHDFS_*`` and ``HADOOP_USER_NAME`` environment variables"""
        port = environ.get("WEBHDFS_PORT", str(DEFAULT_PORT))
        if not port.isdigit():
            raise ValueError("Invalid WEBHDFS_PORT: {}".format(port))
        return cls(
            hdfs_host=environ.get("WEBHDFS_HOST", "localhost"),
            webhdfs_port=int(port),
            use_ssl=environ.get("WEBHDFS_USE_SSL", "").lower() in _TRUE_STRINGS,
            hdfs_user=environ.get("HADOOP_USER_NAME") or None,
            token=environ.get("WEBHDFS_DELEGATION_TOKEN") or None,
        )

    @property
    def scheme(self) -> str:
        return "https" if self.use_ssl else "http"


class ByteBuffer(object):
    """Append-only byte accumulator.

    Holds the URL while a request is being built and the response body once it runs.
    """

    def __init__(self) -> None:
        self._data: Optional[bytearray] = None
        self.open()

    def open(self) -> None:
        self._data = bytearray()

    def _check_open(self) -> bytearray:
        if self._data is None:
            raise ValueError("I/O operation on closed buffer")
        return self._data

    def clear(self) -> None:
        del self._check_open()[:]

    def append(self, data: bytes) -> int:
        self._check_open().extend(data)
        return len(data)

    def append_format(self, fmt: str, *args: object, **kwargs: object) -> int:
        return self.append(fmt.format(*args, **kwargs).encode("utf-8"))

    def getvalue(self) -> bytes:
        return bytes(self._check_open())

    def close(self) -> None:
        self._data = None

    @property
    def closed(self) -> bool:
        return self._data is None

    def __len__(self) -> int:
        return len(self._check_open())

    def __bytes__(self) -> bytes:
        return self.getvalue()


class _BoilerplateClass(Dict[str, object]):
    """Turns a dictionary into a nice looking object with a pretty repr."""

    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)
        self.__dict__ = self

    def __repr__(self) -> str:
        kvs = ["{}={!r}".format(k, v) for k, v in self.items()]
        return "{}({})".format(self.__class__.__name__, ", ".join(kvs))

    def __eq__(self, other: object) -> bool:
        return isinstance(other, self.__class__) and dict.__eq__(self, other)

    def __ne__(self, other: object) -> bool:
        return not self.__eq__(other)


class TransportResponse(_BoilerplateClass):
    """
    :param status_code: HTTP status of the response
    :type status_code: int
    :param location: Absolute redirect target, if the response carried one
    :type location: Optional[str]
    """

    status_code: int
    location: Optional[str]


class Transport(abc.ABC):
    """Carries a single HTTP exchange.

    Implementations raise :py:class:`requests.exceptions.RequestException` when no response
    could be obtained.
    """

    @abc.abstractmethod
    def perform(
        self,
        method: str,
        url: str,
        sink: Sink,
        follow_redirects: bool = True,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Iterator[bytes]] = None,
    ) -> TransportResponse:
        """Send the request and feed every received body byte to ``sink``"""

    def close(self) -> None:
        pass


class RequestsTransport(Transport):
    """Transport backed by ``requests``.

    :param requests_session: A ``requests.Session`` object for advanced usage. If absent, a
        session is created and closed along with the transport. Caller is responsible for closing
        a session it passes in.
    :param timeout: Connect/read timeout in seconds, passed to requests
    :type timeout: float
    :param requests_kwargs: Additional ``**kwargs`` to pass to requests
    """

    _RESERVED_KWARGS = (
        "method",
        "url",
        "data",
        "headers",
        "timeout",
        "stream",
        "allow_redirects",
    )

    def __init__(
        self,
        requests_session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        requests_kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._requests_kwargs = requests_kwargs or {}
        for k in self._RESERVED_KWARGS:
            if k in self._requests_kwargs:
                raise ValueError("Cannot override requests argument {}".format(k))
        self._owns_session = requests_session is None
        self._session = requests_session or requests.Session()
        self.timeout = timeout

    def perform(
        self,
        method: str,
        url: str,
        sink: Sink,
        follow_redirects: bool = True,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Iterator[bytes]] = None,
    ) -> TransportResponse:
        response = self._session.request(
            method,
            url,
            data=body,
            headers=headers,
            timeout=self.timeout,
            stream=True,
            allow_redirects=follow_redirects,
            **self._requests_kwargs,
        )
        with closing(response):
            for chunk in response.iter_content(chunk_size=RESPONSE_CHUNK_SIZE):
                sink(chunk)
        location = response.headers.get("location")
        if location:
            location = urljoin(response.url or url, location)
        return TransportResponse(status_code=response.status_code, location=location)

    def close(self) -> None:
        if self._owns_session:
            self._session.close()


class WebHdfsRequest(object):
    """One WebHDFS call.

    The request is built up by :py:meth:`open`, :py:meth:`set_args` / :py:meth:`set_params` and
    :py:meth:`set_upload`, run once with :py:meth:`execute`, and its body read back with
    :py:meth:`json_response` or :py:attr:`content`. Not safe to share between threads; use one
    request per operation.

    :param config: Connection parameters
    :type config: WebHdfsConfig
    :param path: Absolute HDFS path
    :param logger: Where diagnostics go. Defaults to this module's logger.
    """

    def __init__(
        self,
        config: WebHdfsConfig,
        path: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.buffer = ByteBuffer()
        self.logger = logger or _logger
        self.status_code = 0
        self._upload: Optional[Callable[[int], bytes]] = None
        self._executed = False
        self.open(config, path)

    def open(self, config: WebHdfsConfig, path: str) -> None:
        """Start a fresh request against ``path``, dropping anything from a previous call"""
        self.buffer.open()
        self.status_code = 0
        self._upload = None
        self._executed = False
        # callers always pass an absolute path
        if path.startswith("/"):
            path = path[1:]
        self.buffer.append_format(
            "{}://{}:{}{}/{}?",
            config.scheme,
            config.hdfs_host,
            config.webhdfs_port,
            WEBHDFS_PATH,
            url_quote(path.encode("utf-8")),
        )
        if config.hdfs_user is not None:
            self.buffer.append_format("user.name={}&", url_quote(config.hdfs_user))
        if config.token is not None:
            self.buffer.append_format("delegation={}&", url_quote(config.token))

    def close(self) -> None:
        self.buffer.close()

    def __enter__(self) -> "WebHdfsRequest":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        self.close()

    @property
    def url(self) -> str:
        """The URL built so far. Only meaningful before :py:meth:`execute`."""
        return self.buffer.getvalue().decode("utf-8")

    @property
    def content(self) -> bytes:
        """Raw response body"""
        return self.buffer.getvalue()

    def set_args(self, fmt: str, *args: object, **kwargs: object) -> None:
        """Append a preformatted query fragment, e.g. ``set_args("op={}&", "MKDIRS")``"""
        self._check_not_executed()
        self.buffer.append_format(fmt, *args, **kwargs)

    def set_params(self, **params: object) -> None:
        """Append query parameters, URL encoding the values.

        ``None`` values are skipped, booleans become ``true``/``false`` and ``user_name`` is
        accepted for ``user.name``.
        """
        self._check_not_executed()
        _transform_user_name_key(params)
        for key, value in params.items():
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            self.buffer.append_format(
                "{}={}&", url_quote(key), url_quote(str(value), safe="")
            )

    def set_upload(self, source: Optional[UploadSource]) -> None:
        """Register the request body for a PUT/POST.

        :param source: A callable taking the maximum number of bytes wanted and returning up to
            that many (``b""`` once exhausted), a binary file-like object, or ``bytes``. ``None``
            removes a previously registered source.
        """
        self._check_not_executed()
        if source is None:
            self._upload = None
        elif isinstance(source, (bytes, bytearray)):
            self._upload = io.BytesIO(source).read
        elif hasattr(source, "read"):
            self._upload = source.read  # type: ignore
        elif callable(source):
            self._upload = source
        else:
            raise TypeError("Unsupported upload source: {!r}".format(type(source)))

    def _check_not_executed(self) -> None:
        if self._executed:
            raise WebHdfsException("Request already executed, open it again first")

    def execute(
        self, verb: Union[Verb, str], transport: Optional[Transport] = None
    ) -> None:
        """Run the request.

        Without an upload source this is a single request that follows redirects. With one, the
        NameNode is asked first without a body and without following redirects; the body is then
        streamed with chunked encoding to the ``Location`` it answered with.

        :param verb: HTTP verb
        :param transport: Transport to use. By default a :py:class:`RequestsTransport` is created
            for this call and closed afterwards.
        :raises WebHdfsTransportError: if no HTTP response could be obtained
        :raises WebHdfsRedirectError: if an upload was not redirected anywhere
        """
        if not isinstance(verb, Verb):
            try:
                verb = Verb[verb.upper()]
            except KeyError:
                raise ValueError("Unsupported verb: {}".format(verb))
        if self._upload is not None and verb not in (Verb.PUT, Verb.POST):
            raise ValueError("Uploads require PUT or POST, got {}".format(verb.value))
        self._check_not_executed()
        self._executed = True

        url = self.url
        self.buffer.clear()
        owns_transport = transport is None
        if transport is None:
            transport = RequestsTransport()
        try:
            self._execute(verb, url, transport)
        finally:
            if owns_transport:
                transport.close()

    def _execute(self, verb: Verb, url: str, transport: Transport) -> None:
        method = verb.value
        headers: Optional[Dict[str, str]] = None
        body: Optional[Iterator[bytes]] = None

        if self._upload is not None:
            self.logger.debug("%s %s (redirect lookup)", method, url)
            try:
                response = transport.perform(
                    method, url, self.buffer.append, follow_redirects=False
                )
            except requests.exceptions.RequestException as e:
                self.logger.warning("Failed to reach %s", url, exc_info=True)
                raise WebHdfsTransportError(str(e), url) from e
            self.status_code = response.status_code
            if not response.location:
                raise WebHdfsRedirectError(
                    "no redirect location in response (status {})".format(
                        response.status_code
                    ),
                    url,
                )
            url = response.location
            headers = {"Transfer-Encoding": "chunked"}
            body = _iter_upload(self._upload, UPLOAD_CHUNK_SIZE)

        # drop whatever the redirect response carried
        self.buffer.clear()
        self.logger.debug("%s %s", method, url)
        try:
            response = transport.perform(
                method,
                url,
                self.buffer.append,
                follow_redirects=body is None,
                headers=headers,
                body=body,
            )
        except requests.exceptions.RequestException as e:
            raise WebHdfsTransportError(str(e), url) from e
        self.status_code = response.status_code

    def json_response(self) -> JsonValue:
        """Parse the response body.

        :returns: The decoded JSON, or ``None`` if the body is empty or not valid JSON
        """
        if len(self.buffer) == 0:
            return None
        try:
            return simplejson.loads(self.buffer.getvalue().decode("utf-8"))  # type: ignore
        except (simplejson.JSONDecodeError, UnicodeDecodeError) as e:
            self.logger.error("response-parse: %s", str(e)[:MAX_PARSE_ERROR_LENGTH])
            return None

    def check_status(self, expected_status: int = HTTPStatus.OK) -> None:
        """Raise the matching :py:class:`WebHdfsHttpException` unless the status is as expected"""
        if self.status_code == expected_status:
            return
        js = self.json_response()
        if not isinstance(js, dict) or not isinstance(js.get("RemoteException"), dict):
            raise WebHdfsException(
                "Expected status {}, got {}: {!r}".format(
                    int(expected_status), self.status_code, self.content[:200]
                )
            )
        remote_exception: Dict[str, str] = dict(js["RemoteException"])
        exception_name = remote_exception.get("exception", "")
        remote_exception.setdefault("message", "")
        remote_exception["exception"] = exception_name
        python_name = "WebHdfs" + exception_name
        if python_name in _EXCEPTION_CLASSES:
            cls = _EXCEPTION_CLASSES[python_name]
        else:
            cls = WebHdfsHttpException
            # prefix the message with the exception name since we're not using a fancy class
            remote_exception["message"] = (
                exception_name + " - " + remote_exception["message"]
            )
        raise cls(status_code=self.status_code, **remote_exception)


def _format_error(description: str, url: str) -> str:
    return "{} (url: {})".format(description, url)[:MAX_ERROR_LENGTH]


def _iter_upload(read: Callable[[int], bytes], chunk_size: int) -> Iterator[bytes]:
    """Pull from ``read`` until it comes back empty"""
    while True:
        chunk = read(chunk_size)
        if not chunk:
            return
        if len(chunk) > chunk_size:
            raise ValueError(
                "Upload source returned {} bytes, more than the {} asked for".format(
                    len(chunk), chunk_size
                )
            )
        yield bytes(chunk)


def _transform_user_name_key(kw_dict: Dict[str, object]) -> None:
    """Convert user_name to user.name for convenience with python kwargs"""
    if "user_name" in kw_dict:
        kw_dict["user.name"] = kw_dict["user_name"]
        del kw_dict["user_name"]
