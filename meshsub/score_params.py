"""Peer scoring parameters and thresholds, with their validation rules."""

from __future__ import annotations

import ipaddress
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional, Union

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

DEFAULT_DECAY_INTERVAL = timedelta(seconds=1)
DEFAULT_DECAY_TO_ZERO = 0.01

_ZERO = timedelta(0)
_ONE_SECOND = timedelta(seconds=1)


class ScoreParamsError(ValueError):
    """Raised when score parameters or thresholds are invalid."""


def is_invalid_number(num: float) -> bool:
    """Return True if ``num`` is NaN or infinite."""
    return math.isnan(num) or math.isinf(num)


def _outside_unit_interval(num: float) -> bool:
    return num <= 0 or num >= 1 or is_invalid_number(num)


@dataclass
class PeerScoreThresholds:
    """Score thresholds that gate gossip, publishing, graylisting, PX and grafting."""

    skip_atomic_validation: bool = False
    gossip_threshold: float = 0.0
    publish_threshold: float = 0.0
    graylist_threshold: float = 0.0
    accept_px_threshold: float = 0.0
    opportunistic_graft_threshold: float = 0.0

    def validate(self) -> "PeerScoreThresholds":
        """Check the thresholds; raise ScoreParamsError if invalid, else return self."""
        skip = self.skip_atomic_validation
        if (
            not skip
            or self.publish_threshold != 0
            or self.gossip_threshold != 0
            or self.graylist_threshold != 0
        ):
            if self.gossip_threshold > 0 or is_invalid_number(self.gossip_threshold):
                raise ScoreParamsError(
                    "invalid gossip threshold; it must be <= 0 and a valid number"
                )
            if (
                self.publish_threshold > 0
                or self.publish_threshold > self.gossip_threshold
                or is_invalid_number(self.publish_threshold)
            ):
                raise ScoreParamsError(
                    "invalid publish threshold; it must be <= 0 and <= gossip threshold "
                    "and a valid number"
                )
            if (
                self.graylist_threshold > 0
                or self.graylist_threshold > self.publish_threshold
                or is_invalid_number(self.graylist_threshold)
            ):
                raise ScoreParamsError(
                    "invalid graylist threshold; it must be <= 0 and <= publish threshold "
                    "and a valid number"
                )

        if not skip or self.accept_px_threshold != 0:
            if self.accept_px_threshold < 0 or is_invalid_number(self.accept_px_threshold):
                raise ScoreParamsError(
                    "invalid accept PX threshold; it must be >= 0 and a valid number"
                )

        if not skip or self.opportunistic_graft_threshold != 0:
            if self.opportunistic_graft_threshold < 0 or is_invalid_number(
                self.opportunistic_graft_threshold
            ):
                raise ScoreParamsError(
                    "invalid opportunistic grafting threshold; it must be >= 0 "
                    "and a valid number"
                )

        return self


@dataclass
class TopicScoreParams:
    """Per-topic score parameters (P1 to P4)."""

    skip_atomic_validation: bool = False
    topic_weight: float = 0.0

    # P1: time in the mesh
    time_in_mesh_weight: float = 0.0
    time_in_mesh_quantum: timedelta = _ZERO
    time_in_mesh_cap: float = 0.0

    # P2: first message deliveries
    first_message_deliveries_weight: float = 0.0
    first_message_deliveries_decay: float = 0.0
    first_message_deliveries_cap: float = 0.0

    # P3: mesh message deliveries
    mesh_message_deliveries_weight: float = 0.0
    mesh_message_deliveries_decay: float = 0.0
    mesh_message_deliveries_cap: float = 0.0
    mesh_message_deliveries_threshold: float = 0.0
    mesh_message_deliveries_window: timedelta = _ZERO
    mesh_message_deliveries_activation: timedelta = _ZERO

    # P3b: sticky mesh propagation failures
    mesh_failure_penalty_weight: float = 0.0
    mesh_failure_penalty_decay: float = 0.0

    # P4: invalid messages
    invalid_message_deliveries_weight: float = 0.0
    invalid_message_deliveries_decay: float = 0.0

    def validate(self) -> "TopicScoreParams":
        """Check the parameters; raise ScoreParamsError if invalid, else return self."""
        if self.topic_weight < 0 or is_invalid_number(self.topic_weight):
            raise ScoreParamsError("invalid topic weight; must be >= 0 and a valid number")
        self._validate_time_in_mesh()
        self._validate_first_message_deliveries()
        self._validate_mesh_message_deliveries()
        self._validate_mesh_failure_penalty()
        self._validate_invalid_message_deliveries()
        return self

    def _validate_time_in_mesh(self) -> None:
        if self.skip_atomic_validation and (
            self.time_in_mesh_weight == 0
            and self.time_in_mesh_quantum == _ZERO
            and self.time_in_mesh_cap == 0
        ):
            return
        if self.time_in_mesh_quantum == _ZERO:
            raise ScoreParamsError("invalid TimeInMeshQuantum; must be non zero")
        if self.time_in_mesh_weight < 0 or is_invalid_number(self.time_in_mesh_weight):
            raise ScoreParamsError(
                "invalid TimeInMeshWeight; must be positive (or 0 to disable) "
                "and a valid number"
            )
        if self.time_in_mesh_weight != 0 and self.time_in_mesh_quantum <= _ZERO:
            raise ScoreParamsError("invalid TimeInMeshQuantum; must be positive")
        if self.time_in_mesh_weight != 0 and (
            self.time_in_mesh_cap <= 0 or is_invalid_number(self.time_in_mesh_cap)
        ):
            raise ScoreParamsError(
                "invalid TimeInMeshCap; must be positive and a valid number"
            )

    def _validate_first_message_deliveries(self) -> None:
        if self.skip_atomic_validation and (
            self.first_message_deliveries_weight == 0
            and self.first_message_deliveries_cap == 0
            and self.first_message_deliveries_decay == 0
        ):
            return
        weight = self.first_message_deliveries_weight
        if weight < 0 or is_invalid_number(weight):
            raise ScoreParamsError(
                "invalid FirstMessageDeliveriesWeight; must be positive (or 0 to disable) "
                "and a valid number"
            )
        if weight != 0 and _outside_unit_interval(self.first_message_deliveries_decay):
            raise ScoreParamsError(
                "invalid FirstMessageDeliveriesDecay; must be between 0 and 1"
            )
        if weight != 0 and (
            self.first_message_deliveries_cap <= 0
            or is_invalid_number(self.first_message_deliveries_cap)
        ):
            raise ScoreParamsError(
                "invalid FirstMessageDeliveriesCap; must be positive and a valid number"
            )

    def _validate_mesh_message_deliveries(self) -> None:
        if self.skip_atomic_validation and (
            self.mesh_message_deliveries_weight == 0
            and self.mesh_message_deliveries_cap == 0
            and self.mesh_message_deliveries_decay == 0
            and self.mesh_message_deliveries_threshold == 0
            and self.mesh_message_deliveries_window == _ZERO
            and self.mesh_message_deliveries_activation == _ZERO
        ):
            return
        weight = self.mesh_message_deliveries_weight
        if weight > 0 or is_invalid_number(weight):
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesWeight; must be negative (or 0 to disable) "
                "and a valid number"
            )
        if weight != 0 and _outside_unit_interval(self.mesh_message_deliveries_decay):
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesDecay; must be between 0 and 1"
            )
        if weight != 0 and (
            self.mesh_message_deliveries_cap <= 0
            or is_invalid_number(self.mesh_message_deliveries_cap)
        ):
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesCap; must be positive and a valid number"
            )
        if weight != 0 and (
            self.mesh_message_deliveries_threshold <= 0
            or is_invalid_number(self.mesh_message_deliveries_threshold)
        ):
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesThreshold; must be positive and a valid number"
            )
        if self.mesh_message_deliveries_window < _ZERO:
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesWindow; must be non-negative"
            )
        if weight != 0 and self.mesh_message_deliveries_activation < _ONE_SECOND:
            raise ScoreParamsError(
                "invalid MeshMessageDeliveriesActivation; must be at least 1s"
            )

    def _validate_mesh_failure_penalty(self) -> None:
        if self.skip_atomic_validation and (
            self.mesh_failure_penalty_decay == 0 and self.mesh_failure_penalty_weight == 0
        ):
            return
        weight = self.mesh_failure_penalty_weight
        if weight > 0 or is_invalid_number(weight):
            raise ScoreParamsError(
                "invalid MeshFailurePenaltyWeight; must be negative (or 0 to disable) "
                "and a valid number"
            )
        if weight != 0 and _outside_unit_interval(self.mesh_failure_penalty_decay):
            raise ScoreParamsError(
                "invalid MeshFailurePenaltyDecay; must be between 0 and 1"
            )

    def _validate_invalid_message_deliveries(self) -> None:
        if self.skip_atomic_validation and (
            self.invalid_message_deliveries_decay == 0
            and self.invalid_message_deliveries_weight == 0
        ):
            return
        weight = self.invalid_message_deliveries_weight
        if weight > 0 or is_invalid_number(weight):
            raise ScoreParamsError(
                "invalid InvalidMessageDeliveriesWeight; must be negative (or 0 to disable) "
                "and a valid number"
            )
        if _outside_unit_interval(self.invalid_message_deliveries_decay):
            raise ScoreParamsError(
                "invalid InvalidMessageDeliveriesDecay; must be between 0 and 1"
            )


@dataclass
class PeerScoreParams:
    """Global peer score parameters (P5 to P7, decay, retention) and per-topic params."""

    skip_atomic_validation: bool = False
    topics: dict[str, TopicScoreParams] = field(default_factory=dict)
    topic_score_cap: float = 0.0

    # P5: application-specific score
    app_specific_score: Optional[Callable[[str], float]] = None
    app_specific_weight: float = 0.0

    # P6: IP colocation factor
    ip_colocation_factor_weight: float = 0.0
    ip_colocation_factor_threshold: int = 0
    ip_colocation_factor_whitelist: list[IPNetwork] = field(default_factory=list)

    # P7: behavioural penalties
    behaviour_penalty_weight: float = 0.0
    behaviour_penalty_threshold: float = 0.0
    behaviour_penalty_decay: float = 0.0

    decay_interval: timedelta = _ZERO
    decay_to_zero: float = 0.0
    retain_score: timedelta = _ZERO
    seen_msg_ttl: timedelta = _ZERO

    def validate(self) -> "PeerScoreParams":
        """Check the parameters; raise ScoreParamsError if invalid, else return self.

        In non-atomic mode a missing application score function is replaced by
        one that always returns 0.
        """
        for topic, params in self.topics.items():
            try:
                params.validate()
            except ScoreParamsError as err:
                raise ScoreParamsError(
                    f"invalid score parameters for topic {topic}: {err}"
                ) from err

        skip = self.skip_atomic_validation

        if not skip or self.topic_score_cap != 0:
            if self.topic_score_cap < 0 or is_invalid_number(self.topic_score_cap):
                raise ScoreParamsError(
                    "invalid topic score cap; must be positive (or 0 for no cap) "
                    "and a valid number"
                )

        if self.app_specific_score is None:
            if skip:
                self.app_specific_score = lambda peer: 0.0
            else:
                raise ScoreParamsError("missing application specific score function")

        if not skip or self.ip_colocation_factor_weight != 0:
            if self.ip_colocation_factor_weight > 0 or is_invalid_number(
                self.ip_colocation_factor_weight
            ):
                raise ScoreParamsError(
                    "invalid IPColocationFactorWeight; must be negative (or 0 to disable) "
                    "and a valid number"
                )
            if (
                self.ip_colocation_factor_weight != 0
                and self.ip_colocation_factor_threshold < 1
            ):
                raise ScoreParamsError(
                    "invalid IPColocationFactorThreshold; must be at least 1"
                )

        if (
            not skip
            or self.behaviour_penalty_weight != 0
            or self.behaviour_penalty_threshold != 0
        ):
            if self.behaviour_penalty_weight > 0 or is_invalid_number(
                self.behaviour_penalty_weight
            ):
                raise ScoreParamsError(
                    "invalid BehaviourPenaltyWeight; must be negative (or 0 to disable) "
                    "and a valid number"
                )
            if self.behaviour_penalty_weight != 0 and _outside_unit_interval(
                self.behaviour_penalty_decay
            ):
                raise ScoreParamsError(
                    "invalid BehaviourPenaltyDecay; must be between 0 and 1"
                )
            if self.behaviour_penalty_threshold < 0 or is_invalid_number(
                self.behaviour_penalty_threshold
            ):
                raise ScoreParamsError(
                    "invalid BehaviourPenaltyThreshold; must be >= 0 and a valid number"
                )

        if not skip or self.decay_interval != _ZERO or self.decay_to_zero != 0:
            if self.decay_interval < _ONE_SECOND:
                raise ScoreParamsError("invalid DecayInterval; must be at least 1s")
            if _outside_unit_interval(self.decay_to_zero):
                raise ScoreParamsError("invalid DecayToZero; must be between 0 and 1")

        return self


def score_parameter_decay(decay: timedelta) -> float:
    """Decay factor for a counter, with a 1s decay interval and 0.01 decay-to-zero."""
    return score_parameter_decay_with_base(
        decay, DEFAULT_DECAY_INTERVAL, DEFAULT_DECAY_TO_ZERO
    )


def score_parameter_decay_with_base(
    decay: timedelta, base: timedelta, decay_to_zero: float
) -> float:
    """Decay factor such that after ``decay // base`` ticks the value reaches ``decay_to_zero``."""
    ticks = decay // base
    exponent = math.inf if ticks == 0 else 1 / ticks
    return math.pow(decay_to_zero, exponent)