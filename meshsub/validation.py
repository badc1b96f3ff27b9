"""The message validation pipeline: signature checks and per-topic validators."""

from __future__ import annotations

import enum
import logging
import os
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional, Protocol, Union

from .subscription import Message
from .timecache import TimeCache, new_time_cache
from .tracer import RejectReason

_log = logging.getLogger("meshsub.validation")

DEFAULT_VALIDATE_QUEUE_SIZE = 32
DEFAULT_VALIDATE_CONCURRENCY = 1024
DEFAULT_VALIDATE_THROTTLE = 8192
DEFAULT_SEEN_TTL = timedelta(seconds=120)

Duration = Union[float, int, timedelta]
ValidatorFunc = Callable[[str, Message], Any]


class ValidationResult(enum.IntEnum):
    """Decision of a validator."""

    ACCEPT = 0
    """Deliver the message to the application and forward it."""
    REJECT = 1
    """Drop the message and penalise the peer that forwarded it."""
    IGNORE = 2
    """Drop the message without penalising the forwarding peer."""
    THROTTLED = -1
    """Internal: the validator could not run because its concurrency limit was reached."""


class ValidationError(Exception):
    """Raised when a locally published message fails validation."""

    def __init__(self, reason: RejectReason) -> None:
        super().__init__(reason.value)
        self.reason = reason


class _Tracer(Protocol):
    def validate_message(self, msg: Message) -> None: ...

    def reject_message(self, msg: Message, reason: RejectReason) -> None: ...

    def duplicate_message(self, msg: Message) -> None: ...


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _normalize(raw: Any) -> ValidationResult:
    if isinstance(raw, bool):
        return ValidationResult.ACCEPT if raw else ValidationResult.REJECT
    if isinstance(raw, ValidationResult) and raw is not ValidationResult.THROTTLED:
        return raw
    _log.warning("unexpected result from validator: %r; ignoring message", raw)
    return ValidationResult.IGNORE


@dataclass
class TopicValidator:
    """A validator bound to a topic ("" for a default validator) with its limits.

    The validation function takes the source peer and the message and returns
    either a bool (accept or reject) or a ValidationResult.
    """

    topic: str
    validate: ValidatorFunc
    timeout: Optional[float] = None
    concurrency: int = DEFAULT_VALIDATE_CONCURRENCY
    inline: bool = False
    _throttle: threading.BoundedSemaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._throttle = threading.BoundedSemaphore(self.concurrency)

    def validate_message(self, src: str, msg: Message) -> ValidationResult:
        """Run the validator; unexpected results, errors and timeouts count as IGNORE."""
        start = time.monotonic()
        try:
            if self.timeout is None:
                return _normalize(self._call(src, msg))
            outcome: list[Any] = []
            runner = threading.Thread(
                target=lambda: outcome.append(self._call(src, msg)), daemon=True
            )
            runner.start()
            runner.join(self.timeout)
            if not outcome:
                _log.debug("validation timed out for topic %s", self.topic)
                return ValidationResult.IGNORE
            return _normalize(outcome[0])
        finally:
            _log.debug("validation done; took %.6fs", time.monotonic() - start)

    def _call(self, src: str, msg: Message) -> Any:
        try:
            return self.validate(src, msg)
        except Exception as err:  # a crashing validator must not break the pipeline
            _log.warning("validator for topic %s raised: %s", self.topic, err)
            return None

    def _try_acquire(self) -> bool:
        return self._throttle.acquire(blocking=False)

    def _release(self) -> None:
        self._throttle.release()


def make_validator(
    topic: str,
    validate: ValidatorFunc,
    timeout: Optional[Duration] = None,
    throttle: int = 0,
    inline: bool = False,
) -> TopicValidator:
    """Build a TopicValidator; raise TypeError if ``validate`` is not callable."""
    if not callable(validate):
        name = topic or "(default)"
        raise TypeError(
            f"unknown validator type for topic {name}; must be a callable "
            "returning a bool or a ValidationResult"
        )
    seconds = None if timeout is None else _seconds(timeout)
    return TopicValidator(
        topic=topic,
        validate=validate,
        timeout=seconds if seconds is not None and seconds > 0 else None,
        concurrency=throttle if throttle > 0 else DEFAULT_VALIDATE_CONCURRENCY,
        inline=inline,
    )


def _default_message_id(msg: Message) -> str:
    if msg.id:
        return msg.id
    return msg.from_peer + (msg.seqno or b"").decode("latin-1")


@dataclass
class _Request:
    vals: list[TopicValidator]
    src: str
    msg: Message


class Validation:
    """Validates messages and hands accepted ones to ``deliver``.

    Signed messages are checked with ``verify_signature``; without a verifier
    they are rejected. Each message id passes the user validators at most once.
    Inline validators run in the front-end workers; the others run in their
    own threads, bounded by a global throttle and per-validator concurrency.
    """

    def __init__(
        self,
        deliver: Callable[[Message], None],
        *,
        msg_id: Callable[[Message], str] = _default_message_id,
        seen: Optional[TimeCache] = None,
        verify_signature: Optional[Callable[[Message], bool]] = None,
        tracers: Iterable[_Tracer] = (),
        local_peer: str = "",
        queue_size: int = DEFAULT_VALIDATE_QUEUE_SIZE,
        throttle: int = DEFAULT_VALIDATE_THROTTLE,
        workers: Optional[int] = None,
    ) -> None:
        if queue_size <= 0:
            raise ValueError("validate queue size must be > 0")
        if throttle < 0:
            raise ValueError("validate throttle must be >= 0")
        workers = os.cpu_count() or 1 if workers is None else workers
        if workers <= 0:
            raise ValueError("number of validation workers must be > 0")
        self._deliver = deliver
        self._msg_id = msg_id
        self._owns_seen = seen is None
        self._seen = new_time_cache(DEFAULT_SEEN_TTL) if seen is None else seen
        self._verify_signature = verify_signature
        self._tracers = list(tracers)
        self._local_peer = local_peer
        self._queue: queue.Queue[_Request] = queue.Queue(maxsize=queue_size)
        self._throttle_limit = throttle
        self._throttle = threading.Semaphore(throttle)
        self._workers = workers
        self._lock = threading.Lock()
        self._topic_vals: dict[str, TopicValidator] = {}
        self._default_vals: list[TopicValidator] = []
        self._stopped = threading.Event()
        self._threads: list[threading.Thread] = []

    # -- validator registry

    def add_validator(
        self,
        topic: str,
        validate: ValidatorFunc,
        timeout: Optional[Duration] = None,
        throttle: int = 0,
        inline: bool = False,
    ) -> TopicValidator:
        """Register the validator for ``topic``; raise ValueError if one exists."""
        val = make_validator(topic, validate, timeout, throttle, inline)
        with self._lock:
            if topic in self._topic_vals:
                raise ValueError(f"duplicate validator for topic {topic}")
            self._topic_vals[topic] = val
        return val

    def add_default_validator(
        self,
        validate: ValidatorFunc,
        timeout: Optional[Duration] = None,
        throttle: int = 0,
        inline: bool = False,
    ) -> TopicValidator:
        """Add a validator that applies to every topic."""
        val = make_validator("", validate, timeout, throttle, inline)
        with self._lock:
            self._default_vals.append(val)
        return val

    def remove_validator(self, topic: str) -> None:
        """Remove the validator for ``topic``; raise KeyError if there is none."""
        with self._lock:
            if self._topic_vals.pop(topic, None) is None:
                raise KeyError(f"no validator for topic {topic}")

    def get_validators(self, msg: Message) -> list[TopicValidator]:
        """Default validators followed by the message topic's validator, if any."""
        with self._lock:
            vals = list(self._default_vals)
            topic_val = self._topic_vals.get(msg.topic)
        if topic_val is not None:
            vals.append(topic_val)
        return vals

    # -- entry points

    def push_local(self, msg: Message) -> None:
        """Validate a locally published message synchronously.

        Raises ValidationError when it is rejected or ignored.
        """
        self._validate(self.get_validators(msg), msg.received_from, msg, synchronous=True)

    def push(self, src: str, msg: Message) -> bool:
        """Queue a received message; return True if it needs no validation at all."""
        vals = self.get_validators(msg)
        if vals or msg.signature is not None:
            try:
                self._queue.put_nowait(_Request(vals, src, msg))
            except queue.Full:
                _log.debug("message validation throttled: queue full; dropping message from %s", src)
                self._reject(msg, RejectReason.VALIDATION_QUEUE_FULL)
            return False
        return True

    def start(self) -> None:
        """Start the front-end validation workers."""
        if self._threads:
            return
        self._stopped.clear()
        for index in range(self._workers):
            worker = threading.Thread(
                target=self._work, name=f"validate-worker-{index}", daemon=True
            )
            worker.start()
            self._threads.append(worker)

    def stop(self) -> None:
        """Stop the workers and release the seen cache if this pipeline created it."""
        self._stopped.set()
        for worker in self._threads:
            worker.join()
        self._threads.clear()
        if self._owns_seen:
            self._seen.done()

    def __enter__(self) -> "Validation":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    # -- pipeline

    def _work(self) -> None:
        while not self._stopped.is_set():
            try:
                req = self._queue.get(timeout=0.05)
            except queue.Empty:
                continue
            try:
                self._validate(req.vals, req.src, req.msg, synchronous=False)
            except ValidationError:
                pass
            except RuntimeError as err:
                _log.debug("validation stopped: %s", err)

    def _traced(self, msg: Message) -> bool:
        return msg.received_from != self._local_peer

    def _reject(self, msg: Message, reason: RejectReason) -> None:
        if self._traced(msg):
            for tracer in self._tracers:
                tracer.reject_message(msg, reason)

    def _signature_ok(self, msg: Message) -> bool:
        if self._verify_signature is None:
            _log.debug("no signature verifier configured")
            return False
        try:
            return bool(self._verify_signature(msg))
        except Exception as err:
            _log.debug("signature verification error: %s", err)
            return False

    def _validate(
        self, vals: list[TopicValidator], src: str, msg: Message, synchronous: bool
    ) -> None:
        if msg.signature is not None and not self._signature_ok(msg):
            _log.debug("message signature validation failed; dropping message from %s", src)
            self._reject(msg, RejectReason.INVALID_SIGNATURE)
            raise ValidationError(RejectReason.INVALID_SIGNATURE)

        if not self._seen.add(self._msg_id(msg)):
            if self._traced(msg):
                for tracer in self._tracers:
                    tracer.duplicate_message(msg)
            return
        if self._traced(msg):
            for tracer in self._tracers:
                tracer.validate_message(msg)

        inline = [val for val in vals if val.inline or synchronous]
        deferred = [val for val in vals if not (val.inline or synchronous)]

        result = ValidationResult.ACCEPT
        for val in inline:
            outcome = val.validate_message(src, msg)
            if outcome is ValidationResult.REJECT:
                result = outcome
                break
            if outcome is ValidationResult.IGNORE:
                result = outcome

        if result is ValidationResult.REJECT:
            _log.debug("message validation failed; dropping message from %s", src)
            self._reject(msg, RejectReason.VALIDATION_FAILED)
            raise ValidationError(RejectReason.VALIDATION_FAILED)

        if deferred:
            if self._throttle_limit > 0 and self._throttle.acquire(blocking=False):
                threading.Thread(
                    target=self._run_deferred,
                    args=(deferred, src, msg, result),
                    daemon=True,
                ).start()
            else:
                _log.debug("message validation throttled; dropping message from %s", src)
                self._reject(msg, RejectReason.VALIDATION_THROTTLED)
            return

        if result is ValidationResult.IGNORE:
            self._reject(msg, RejectReason.VALIDATION_IGNORED)
            raise ValidationError(RejectReason.VALIDATION_IGNORED)

        if self._stopped.is_set() and self._threads:
            raise RuntimeError("validation pipeline stopped")
        self._deliver(msg)

    def _run_deferred(
        self,
        vals: list[TopicValidator],
        src: str,
        msg: Message,
        prior: ValidationResult,
    ) -> None:
        try:
            result = self._validate_topic(vals, src, msg)
            if result is ValidationResult.ACCEPT and prior is not ValidationResult.ACCEPT:
                result = prior
            if result is ValidationResult.ACCEPT:
                if not self._stopped.is_set():
                    self._deliver(msg)
            elif result is ValidationResult.REJECT:
                _log.debug("message validation failed; dropping message from %s", src)
                self._reject(msg, RejectReason.VALIDATION_FAILED)
            elif result is ValidationResult.IGNORE:
                _log.debug("message validation punted; ignoring message from %s", src)
                self._reject(msg, RejectReason.VALIDATION_IGNORED)
            else:
                _log.debug("message validation throttled; ignoring message from %s", src)
                self._reject(msg, RejectReason.VALIDATION_THROTTLED)
        finally:
            self._throttle.release()

    def _validate_topic(
        self, vals: list[TopicValidator], src: str, msg: Message
    ) -> ValidationResult:
        if len(vals) == 1:
            return self._validate_single(vals[0], src, msg)

        results: queue.SimpleQueue[ValidationResult] = queue.SimpleQueue()
        for val in vals:
            if val._try_acquire():
                threading.Thread(
                    target=self._run_throttled, args=(val, src, msg, results), daemon=True
                ).start()
            else:
                _log.debug("validation throttled for topic %s", val.topic)
                results.put(ValidationResult.THROTTLED)

        result = ValidationResult.ACCEPT
        for _ in vals:
            outcome = results.get()
            if outcome is ValidationResult.REJECT:
                return outcome
            if outcome is ValidationResult.IGNORE:
                # throttling takes precedence: the throttled validator might have rejected
                if result is not ValidationResult.THROTTLED:
                    result = outcome
            elif outcome is ValidationResult.THROTTLED:
                result = outcome
        return result

    @staticmethod
    def _run_throttled(
        val: TopicValidator,
        src: str,
        msg: Message,
        results: "queue.SimpleQueue[ValidationResult]",
    ) -> None:
        try:
            results.put(val.validate_message(src, msg))
        finally:
            val._release()

    @staticmethod
    def _validate_single(val: TopicValidator, src: str, msg: Message) -> ValidationResult:
        if not val._try_acquire():
            _log.debug("validation throttled for topic %s", val.topic)
            return ValidationResult.THROTTLED
        try:
            return val.validate_message(src, msg)
        finally:
            val._release()