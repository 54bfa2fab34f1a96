"""
REST RPC Client - Data-plane and instance-admin calls over HTTP/JSON

Speaks the Cloud Spanner REST surface: unary calls return JSON bodies,
executeStreamingSql streams a JSON array of PartialResultSet messages.
Failures are mapped to StatusError with the canonical status code so the
error classifier can reason about them.

Usage:
    from infrastructure.rpc_client import RestDataPlaneClient

    api = RestDataPlaneClient("spanner.googleapis.com:443", headers_provider=auth.get_headers)
    session = api.create_session(ctx, "projects/p/instances/i/databases/d")
    for result in api.execute_streaming_sql(ctx, session, Statement("SELECT 1"),
                                            transaction=SINGLE_USE_READ_ONLY):
        ...
"""

import base64
import codecs
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

import grpc
import requests
import structlog

from execution.context import Context
from execution.errors import StatusError
from execution.statement import Mutation, Statement, mutations_to_dicts
from execution.stream import PartialResult

logger = structlog.get_logger(__name__)

# Fallback when an error body carries no canonical status name
HTTP_STATUS_CODES: Dict[int, grpc.StatusCode] = {
    400: grpc.StatusCode.INVALID_ARGUMENT,
    401: grpc.StatusCode.UNAUTHENTICATED,
    403: grpc.StatusCode.PERMISSION_DENIED,
    404: grpc.StatusCode.NOT_FOUND,
    409: grpc.StatusCode.ABORTED,
    412: grpc.StatusCode.FAILED_PRECONDITION,
    429: grpc.StatusCode.RESOURCE_EXHAUSTED,
    499: grpc.StatusCode.CANCELLED,
    500: grpc.StatusCode.INTERNAL,
    501: grpc.StatusCode.UNIMPLEMENTED,
    502: grpc.StatusCode.UNAVAILABLE,
    503: grpc.StatusCode.UNAVAILABLE,
    504: grpc.StatusCode.DEADLINE_EXCEEDED,
}

RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"


def encode_bytes(value: Optional[bytes]) -> Optional[str]:
    if value is None:
        return None
    return base64.b64encode(value).decode("ascii")


def decode_bytes(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    return base64.b64decode(value)


def parse_duration(value: Optional[str]) -> Optional[float]:
    """Parse a protobuf JSON duration such as "1.5s" into seconds"""
    if not value or not value.endswith("s"):
        return None
    try:
        return float(value[:-1])
    except ValueError:
        return None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp as returned by the server

    Nanosecond precision is truncated to microseconds.
    """
    if not value:
        return None
    value = value.rstrip("Z")
    if "." in value:
        seconds, fraction = value.split(".", 1)
        value = f"{seconds}.{fraction[:6].ljust(6, '0')}"
        fmt = "%Y-%m-%dT%H:%M:%S.%f"
    else:
        fmt = "%Y-%m-%dT%H:%M:%S"
    return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)


def status_error_from_body(body: Any, http_status: Optional[int] = None) -> StatusError:
    """
    Build a StatusError from a Google JSON error body

    Args:
        body: Parsed response body, e.g. {"error": {"status": "ABORTED", ...}}
        http_status: HTTP status code used when the body has no status name

    Returns:
        StatusError carrying the canonical code, message and retry delay
    """
    error = body.get("error", {}) if isinstance(body, dict) else {}
    if not isinstance(error, dict):
        error = {"message": str(error)}

    code = grpc.StatusCode.__members__.get(error.get("status", ""))
    if code is None:
        code = HTTP_STATUS_CODES.get(http_status or error.get("code"), grpc.StatusCode.UNKNOWN)

    retry_delay = None
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("@type") == RETRY_INFO_TYPE:
            retry_delay = parse_duration(detail.get("retryDelay"))

    return StatusError(error.get("message", ""), code=code, retry_delay=retry_delay)


def _encode_selector(transaction: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if transaction is None or "id" not in transaction:
        return transaction
    return {"id": encode_bytes(transaction["id"])}


class PartialResultStream:
    """
    Iterator over the messages of one executeStreamingSql response

    The body is a JSON array of PartialResultSet messages written as the
    server produces them; each element is decoded as soon as it is complete.
    The response is closed when the context ends so a blocked read returns
    immediately.
    """

    def __init__(self, ctx: Context, response: requests.Response):
        self._response = response
        self._chunks = response.iter_content(chunk_size=None)
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._decoder = json.JSONDecoder()
        self._buffer = ""
        self._exhausted = False
        self._field_count: Optional[int] = None
        self._unregister: Callable[[], None] = lambda: None
        self._unregister = ctx.add_done_callback(self.close)

    def __iter__(self) -> Iterator[PartialResult]:
        return self

    def __next__(self) -> PartialResult:
        while True:
            message = self._next_message()
            if message is not None:
                return self._parse(message)

            if self._exhausted:
                self.close()
                if self._buffer:
                    raise StatusError(
                        f"Streaming response ended mid-message: {self._buffer[:80]!r}",
                        code=grpc.StatusCode.UNAVAILABLE
                    )
                raise StopIteration

            self._read_chunk()

    def close(self) -> None:
        self._unregister()
        self._response.close()

    def _next_message(self) -> Optional[Dict[str, Any]]:
        # Array brackets and element separators sit between messages
        self._buffer = self._buffer.lstrip(" \t\r\n[,]")
        if not self._buffer:
            return None
        try:
            message, end = self._decoder.raw_decode(self._buffer)
        except json.JSONDecodeError:
            return None
        self._buffer = self._buffer[end:]
        return message

    def _read_chunk(self) -> None:
        try:
            chunk = next(self._chunks)
        except StopIteration:
            self._buffer += self._text.decode(b"", final=True)
            self._exhausted = True
            return
        except (requests.exceptions.ConnectionError,
                requests.exceptions.ChunkedEncodingError) as e:
            raise StatusError(str(e), code=grpc.StatusCode.UNAVAILABLE) from e

        self._buffer += self._text.decode(chunk)

    def _parse(self, message: Dict[str, Any]) -> PartialResult:
        if "error" in message:
            raise status_error_from_body(message)

        metadata = message.get("metadata") or {}
        fields = (metadata.get("rowType") or {}).get("fields")
        if fields is not None:
            self._field_count = len(fields)

        values = message.get("values") or []
        rows: List[List[Any]]
        if self._field_count:
            rows = [values[i:i + self._field_count] for i in range(0, len(values), self._field_count)]
        else:
            rows = [[value] for value in values]

        transaction = metadata.get("transaction") or {}
        stats = message.get("stats")
        if stats is not None and "rowCountExact" in stats:
            stats = dict(stats, rowCountExact=int(stats["rowCountExact"]))

        return PartialResult(
            rows=rows,
            resume_token=decode_bytes(message.get("resumeToken")),
            transaction_id=decode_bytes(transaction.get("id")),
            stats=stats
        )


class RestTransport:
    """Shared HTTP plumbing for the REST clients"""

    def __init__(self,
                 endpoint: str,
                 headers_provider: Optional[Callable[[], Dict[str, str]]] = None,
                 timeout: float = 60.0):
        """
        Initialize transport

        Args:
            endpoint: Host[:port] or base URL of the service
            headers_provider: Returns auth headers for each request
            timeout: Request timeout when the context has no deadline
        """
        if not endpoint:
            raise ValueError("endpoint required")

        self.endpoint = endpoint
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            self.base_url = f"{endpoint.rstrip('/')}/v1"
        else:
            self.base_url = f"https://{endpoint}/v1"
        self.headers_provider = headers_provider
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.headers_provider is not None:
            headers.update(self.headers_provider())
        return headers

    def _timeout(self, ctx: Context) -> float:
        remaining = ctx.remaining()
        if remaining is None:
            return self.timeout
        return min(remaining, self.timeout)

    def _send(self,
              ctx: Context,
              method: str,
              path: str,
              params: Optional[Dict] = None,
              json: Optional[Dict] = None,
              stream: bool = False) -> requests.Response:
        """
        Issue one HTTP request and map failures to StatusError

        Args:
            ctx: Ambient context bounding the request
            method: HTTP method (GET, POST, etc.)
            path: Resource path below /v1 (e.g., "/projects/p/instances/i")
            params: Query parameters
            json: JSON body
            stream: Keep the body open for incremental reads

        Returns:
            Response with a 2xx status
        """
        ctx.check()
        url = f"{self.base_url}{path}"

        try:
            response = requests.request(
                method=method,
                url=url,
                headers=self._headers(),
                params=params,
                json=json,
                timeout=self._timeout(ctx),
                stream=stream
            )
        except requests.exceptions.Timeout as e:
            raise StatusError(str(e), code=grpc.StatusCode.DEADLINE_EXCEEDED) from e
        except requests.exceptions.ConnectionError as e:
            raise StatusError(str(e), code=grpc.StatusCode.UNAVAILABLE) from e

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            try:
                body = response.json()
            except ValueError:
                body = {"error": {"message": response.text}}
            error = status_error_from_body(body, response.status_code)
            logger.debug(
                "rpc_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                code=error.code.name
            )
            response.close()
            raise error from e

        return response

    def _request(self,
                 ctx: Context,
                 method: str,
                 path: str,
                 params: Optional[Dict] = None,
                 json: Optional[Dict] = None) -> Dict[str, Any]:
        """Unary request returning the decoded JSON body"""
        response = self._send(ctx, method, path, params=params, json=json)
        if response.content:
            return response.json()
        return {}


class RestDataPlaneClient(RestTransport):
    """Session, transaction and query RPCs"""

    def create_session(self, ctx: Context, database: str) -> str:
        """Create a session; returns its resource name"""
        response = self._request(ctx, "POST", f"/{database}/sessions", json={})
        return response["name"]

    def delete_session(self, ctx: Context, session: str) -> None:
        self._request(ctx, "DELETE", f"/{session}")

    def begin_transaction(self, ctx: Context, session: str, read_only: bool = False) -> bytes:
        """
        Begin a transaction

        Returns:
            Opaque transaction id
        """
        if read_only:
            options = {"readOnly": {"strong": True}}
        else:
            options = {"readWrite": {}}
        response = self._request(
            ctx, "POST", f"/{session}:beginTransaction", json={"options": options}
        )
        return decode_bytes(response.get("id"))

    def execute_streaming_sql(self,
                              ctx: Context,
                              session: str,
                              statement: Statement,
                              transaction: Optional[Dict[str, Any]] = None,
                              resume_token: Optional[bytes] = None,
                              seqno: Optional[int] = None) -> PartialResultStream:
        """
        Execute a statement and stream its partial results

        Args:
            ctx: Ambient context; ending it closes the response
            session: Session resource name
            statement: Statement to execute
            transaction: Transaction selector (singleUse, begin or id)
            resume_token: Continue after the rows this token acknowledges
            seqno: Sequence number of a DML statement within its transaction

        Returns:
            Iterator of PartialResult
        """
        body = statement.to_dict()
        selector = _encode_selector(transaction)
        if selector is not None:
            body["transaction"] = selector
        if resume_token is not None:
            body["resumeToken"] = encode_bytes(resume_token)
        if seqno is not None:
            body["seqno"] = str(seqno)

        response = self._send(ctx, "POST", f"/{session}:executeStreamingSql", json=body, stream=True)
        return PartialResultStream(ctx, response)

    def commit(self,
               ctx: Context,
               session: str,
               transaction_id: Optional[bytes] = None,
               mutations: Optional[List[Mutation]] = None) -> datetime:
        """
        Commit a transaction

        Without a transaction id the mutations are committed in a single-use
        read/write transaction.

        Returns:
            Commit timestamp
        """
        body: Dict[str, Any] = {"mutations": mutations_to_dicts(mutations)}
        if transaction_id is None:
            body["singleUseTransaction"] = {"readWrite": {}}
        else:
            body["transactionId"] = encode_bytes(transaction_id)

        response = self._request(ctx, "POST", f"/{session}:commit", json=body)
        return parse_timestamp(response.get("commitTimestamp"))

    def rollback(self, ctx: Context, session: str, transaction_id: bytes) -> None:
        self._request(
            ctx, "POST", f"/{session}:rollback",
            json={"transactionId": encode_bytes(transaction_id)}
        )


class RestInstanceAdminClient(RestTransport):
    """Instance metadata reads used for endpoint discovery"""

    def get_instance(self,
                     ctx: Context,
                     name: str,
                     field_mask: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Read instance metadata

        Args:
            ctx: Ambient context
            name: Instance resource name (projects/<p>/instances/<i>)
            field_mask: Fields to return (e.g., ["endpointUris"])

        Returns:
            Instance resource as dictionary
        """
        params = {"fieldMask": ",".join(field_mask)} if field_mask else None
        return self._request(ctx, "GET", f"/{name}", params=params)
