"""Remote fixity check client.

Asks the remote fixity service to recompute a stored object's checksum
directly at the provider, so verification never has to download the
object. Three transports share one interface:

    HttpFixityCheck       one blocking request; fine for small objects
    PollingFixityCheck    create a job, then poll it until it finishes
    WebSocketFixityCheck  subscribe to a job channel and wait for messages

Long-running jobs report progress. If that progress stops for longer than
the stall timeout, the check fails with RemoteFixityCheckTimeout even
though the network is still healthy.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import requests
import websocket

from preservation.lib.errors import PollingWaitTimeoutError, RemoteFixityCheckTimeout, RemoteFixityError

logger = logging.getLogger(__name__)

__all__ = [
    "FixityCheckResult",
    "HttpFixityCheck",
    "PollingFixityCheck",
    "RemoteFixityClient",
    "RemoteFixityTransport",
    "WebSocketFixityCheck",
    "HTTP_POLLING_THRESHOLD",
    "STALL_TIMEOUT",
]

STALL_TIMEOUT = 120.0
POLLING_DELAY = 2.0
HTTP_POLLING_THRESHOLD = 2 * 1024 ** 3

CHANNEL_NAME = "FixityCheckChannel"
RUN_ACTION = "run_fixity_check_for_s3_object"
PROGRESS_MESSAGE = "fixity_check_in_progress"
TERMINAL_MESSAGES = ("fixity_check_complete", "fixity_check_error")
TERMINAL_STATUSES = ("success", "error")


@dataclass(frozen=True)
class FixityCheckResult:
    """Outcome of a remote check.

    Exactly one of ``error_message`` or (``checksum_hexdigest``,
    ``object_size``) is populated.
    """

    checksum_hexdigest: Optional[str] = None
    object_size: Optional[int] = None
    error_message: Optional[str] = None

    @classmethod
    def from_response(cls, response: Dict[str, Any]) -> "FixityCheckResult":
        error_message = response.get("error_message")
        if error_message:
            return cls(error_message=error_message)
        return cls(
            checksum_hexdigest=response.get("checksum_hexdigest"),
            object_size=response.get("object_size"),
        )

    @classmethod
    def from_exception(cls, error: Exception) -> "FixityCheckResult":
        return cls(error_message=f"An unexpected error occurred: {type(error).__name__} -> {error}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checksum_hexdigest": self.checksum_hexdigest,
            "object_size": self.object_size,
            "error_message": self.error_message,
        }


def _fixity_check_payload(bucket_name: str, object_path: str, checksum_algorithm_name: str) -> Dict[str, Any]:
    return {
        "fixity_check": {
            "bucket_name": bucket_name,
            "object_path": object_path,
            "checksum_algorithm_name": checksum_algorithm_name,
        }
    }


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RemoteFixityTransport(ABC):
    """One way of running a remote fixity check."""

    name = "abstract"

    @abstractmethod
    def run(
        self,
        job_identifier: Any,
        bucket_name: str,
        object_path: str,
        checksum_algorithm_name: str,
    ) -> FixityCheckResult:
        """Run a check and block until it finishes.

        Raises:
            RemoteFixityCheckTimeout: If the remote job stops making progress
        """
        pass


class _HttpTransport(RemoteFixityTransport):
    def __init__(
        self,
        http_base_url: str,
        auth_token: str,
        http_timeout: float,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.http_base_url = http_base_url.rstrip("/")
        self.auth_token = auth_token
        self.http_timeout = http_timeout
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({
                "Authorization": f"Bearer {self.auth_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            })
        return self._session

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.post(f"{self.http_base_url}{path}", json=payload, timeout=self.http_timeout)
        response.raise_for_status()
        return response.json()

    def _get(self, path: str) -> Dict[str, Any]:
        response = self.session.get(f"{self.http_base_url}{path}", timeout=self.http_timeout)
        response.raise_for_status()
        return response.json()


class HttpFixityCheck(_HttpTransport):
    """Synchronous check: one request held open for the whole computation."""

    name = "http"

    def run(
        self,
        job_identifier: Any,
        bucket_name: str,
        object_path: str,
        checksum_algorithm_name: str,
    ) -> FixityCheckResult:
        payload = _fixity_check_payload(bucket_name, object_path, checksum_algorithm_name)
        try:
            response = self._post("/fixity_checks/run_fixity_check_for_s3_object", payload)
        except requests.Timeout as e:
            raise RemoteFixityCheckTimeout(
                f"Timed out after {self.http_timeout}s while waiting for a response.",
                details={"object_path": object_path},
            ) from e
        except (requests.RequestException, ValueError) as e:
            return FixityCheckResult.from_exception(e)
        return FixityCheckResult.from_response(response)


class PollingFixityCheck(_HttpTransport):
    """Create a fixity check job, then poll it at a fixed delay."""

    name = "http_polling"

    def __init__(
        self,
        http_base_url: str,
        auth_token: str,
        http_timeout: float,
        *,
        max_wait: float,
        stall_timeout: float = STALL_TIMEOUT,
        polling_delay: float = POLLING_DELAY,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        super().__init__(http_base_url, auth_token, http_timeout, session=session)
        self.max_wait = max_wait
        self.stall_timeout = stall_timeout
        self.polling_delay = polling_delay
        self.sleep = sleep
        self.clock = clock
        self.now = now

    def run(
        self,
        job_identifier: Any,
        bucket_name: str,
        object_path: str,
        checksum_algorithm_name: str,
    ) -> FixityCheckResult:
        payload = _fixity_check_payload(bucket_name, object_path, checksum_algorithm_name)
        try:
            created = self._post("/fixity_checks", payload)
        except (requests.RequestException, ValueError) as e:
            return FixityCheckResult.from_exception(e)

        if created.get("error_message"):
            raise RemoteFixityError(created["error_message"], details={"object_path": object_path})

        remote_id = created["id"]
        started = self.clock()
        while True:
            if self.clock() - started > self.max_wait:
                raise PollingWaitTimeoutError(
                    f"Gave up on remote fixity check {remote_id} after {self.max_wait}s",
                    details={"object_path": object_path},
                )

            self.sleep(self.polling_delay)

            try:
                response = self._get(f"/fixity_checks/{remote_id}")
            except requests.RequestException as e:
                logger.info(
                    "Error connecting to the fixity service during polling loop iteration: %s -> %s",
                    type(e).__name__,
                    e,
                )
                continue

            status = response.get("status")
            if status in TERMINAL_STATUSES:
                return FixityCheckResult.from_response(response)
            if status == "pending":
                # The service cleans up jobs that stay pending too long
                continue

            if not response.get("updated_at"):
                raise RemoteFixityError(
                    f"Remote fixity check {remote_id} reported status {status!r} without an updated_at timestamp",
                    details={"object_path": object_path, "status": status},
                )
            last_update = _parse_timestamp(response["updated_at"])
            if self.now() - last_update > timedelta(seconds=self.stall_timeout):
                raise RemoteFixityCheckTimeout(
                    "Timed out while waiting for a response.",
                    details={"object_path": object_path, "last_update": last_update.isoformat()},
                )


class WebSocketFixityCheck(RemoteFixityTransport):
    """Run a check over the service's ActionCable channel.

    The receive timeout doubles as a one-second tick: after every message
    or timeout the loop checks for a terminal message or an expired stall
    window. Single-threaded; blocks the caller until done.
    """

    name = "websocket"

    def __init__(
        self,
        ws_url: str,
        auth_token: str,
        *,
        stall_timeout: float = STALL_TIMEOUT,
        tick: float = 1.0,
        connect: Callable[..., Any] = websocket.create_connection,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ws_url = ws_url
        self.auth_token = auth_token
        self.stall_timeout = stall_timeout
        self.tick = tick
        self.connect = connect
        self.clock = clock

    def run(
        self,
        job_identifier: Any,
        bucket_name: str,
        object_path: str,
        checksum_algorithm_name: str,
    ) -> FixityCheckResult:
        identifier = json.dumps({"channel": CHANNEL_NAME, "job_identifier": job_identifier})
        ws = self.connect(
            self.ws_url,
            header=[f"Authorization: Bearer {self.auth_token}"],
            timeout=self.tick,
        )

        job_response: Optional[Dict[str, Any]] = None
        last_progress = self.clock()
        try:
            while job_response is None and self.clock() - last_progress <= self.stall_timeout:
                try:
                    raw = ws.recv()
                except websocket.WebSocketTimeoutException:
                    continue
                except websocket.WebSocketConnectionClosedException:
                    logger.warning("Fixity channel closed before job %s finished", job_identifier)
                    break

                if not raw:
                    continue
                data = json.loads(raw)
                message_type = data.get("type")

                if message_type == "welcome":
                    ws.send(json.dumps({"command": "subscribe", "identifier": identifier}))
                elif message_type == "confirm_subscription" and self._for_job(data, job_identifier):
                    ws.send(json.dumps({
                        "command": "message",
                        "identifier": identifier,
                        "data": json.dumps({
                            "action": RUN_ACTION,
                            "bucket_name": bucket_name,
                            "object_path": object_path,
                            "checksum_algorithm_name": checksum_algorithm_name,
                        }),
                    }))
                elif message_type is None and self._for_job(data, job_identifier):
                    message = self._job_message(data)
                    if message is None:
                        continue
                    if message.get("type") == PROGRESS_MESSAGE:
                        last_progress = self.clock()
                    elif message.get("type") in TERMINAL_MESSAGES:
                        job_response = self._decode(message.get("data")) or {}
        finally:
            ws.close()

        if job_response is None:
            raise RemoteFixityCheckTimeout(
                "Timed out while waiting for a response.",
                details={"object_path": object_path, "job_identifier": job_identifier},
            )
        return FixityCheckResult.from_response(job_response)

    @staticmethod
    def _decode(value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value

    @classmethod
    def _for_job(cls, data: Dict[str, Any], job_identifier: Any) -> bool:
        if data.get("identifier") is None:
            return False
        identifier = cls._decode(data["identifier"])
        return isinstance(identifier, dict) and identifier.get("job_identifier") == job_identifier

    @classmethod
    def _job_message(cls, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if data.get("message") is None:
            return None
        message = cls._decode(data["message"])
        return message if isinstance(message, dict) else None


class RemoteFixityClient:
    """Builds transports and picks one by object size.

    Example:
        >>> client = RemoteFixityClient.from_config(config.check_please)
        >>> result = client.check(42, "cul-preservation-aws", "ldpd/file.tif", "sha256", 1024)
        >>> result.checksum_hexdigest
        'e3b0c442...'
    """

    def __init__(
        self,
        http_base_url: str,
        ws_url: str,
        auth_token: str,
        http_timeout: float,
        *,
        max_wait: float,
        stall_timeout: float = STALL_TIMEOUT,
        polling_delay: float = POLLING_DELAY,
        http_polling_threshold: int = HTTP_POLLING_THRESHOLD,
    ) -> None:
        self.http_base_url = http_base_url
        self.ws_url = ws_url
        self.auth_token = auth_token
        self.http_timeout = http_timeout
        self.max_wait = max_wait
        self.stall_timeout = stall_timeout
        self.polling_delay = polling_delay
        self.http_polling_threshold = http_polling_threshold

    @classmethod
    def from_config(cls, config: Any) -> "RemoteFixityClient":
        return cls(
            config.http_base_url,
            config.ws_url,
            config.auth_token,
            config.http_timeout,
            max_wait=config.max_wait,
            stall_timeout=config.stall_timeout,
            polling_delay=config.polling_delay,
        )

    def http(self) -> HttpFixityCheck:
        return HttpFixityCheck(self.http_base_url, self.auth_token, self.http_timeout)

    def polling(self) -> PollingFixityCheck:
        return PollingFixityCheck(
            self.http_base_url,
            self.auth_token,
            self.http_timeout,
            max_wait=self.max_wait,
            stall_timeout=self.stall_timeout,
            polling_delay=self.polling_delay,
        )

    def websocket(self) -> WebSocketFixityCheck:
        return WebSocketFixityCheck(self.ws_url, self.auth_token, stall_timeout=self.stall_timeout)

    def transport_for_size(self, object_size: int) -> RemoteFixityTransport:
        """Synchronous HTTP below the polling threshold, polling at or above it."""
        if object_size < self.http_polling_threshold:
            return self.http()
        return self.polling()

    def check(
        self,
        job_identifier: Any,
        bucket_name: str,
        object_path: str,
        checksum_algorithm_name: str,
        object_size: int,
        transport: Optional[RemoteFixityTransport] = None,
    ) -> FixityCheckResult:
        transport = transport or self.transport_for_size(object_size)
        logger.info(
            "Running %s fixity check for %s/%s (%s)",
            transport.name,
            bucket_name,
            object_path,
            checksum_algorithm_name,
        )
        return transport.run(job_identifier, bucket_name, object_path, checksum_algorithm_name)
