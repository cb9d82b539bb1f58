"""Feature gates and the proxy's default gate set."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping

logger = logging.getLogger(__name__)


class PreRelease(str, Enum):
    """Maturity stage of a feature."""

    ALPHA = "ALPHA"
    BETA = "BETA"
    GA = ""
    DEPRECATED = "DEPRECATED"


@dataclass(frozen=True)
class FeatureSpec:
    """Default value and maturity of a feature."""

    default: bool
    pre_release: PreRelease = PreRelease.GA
    lock_to_default: bool = False


class FeatureGate:
    """Tracks known features and which of them are switched on."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._known: Dict[str, FeatureSpec] = {}
        self._enabled: Dict[str, bool] = {}

    def add(self, features: Mapping[str, FeatureSpec]) -> None:
        """Register features; re-adding one with the same spec is allowed."""
        with self._lock:
            known = dict(self._known)
            for name, spec in features.items():
                existing = known.get(name)
                if existing is not None:
                    if existing == spec:
                        continue
                    raise ValueError(
                        f"feature gate {name!r} with different spec already exists: {existing}"
                    )
                known[name] = spec
            self._known = known

    def enabled(self, key: str) -> bool:
        with self._lock:
            if key in self._enabled:
                return self._enabled[key]
            spec = self._known.get(key)
        if spec is None:
            raise KeyError(f"feature {key!r} is not registered in FeatureGate")
        return spec.default

    def set_from_map(self, values: Mapping[str, bool]) -> None:
        """Set feature values; nothing changes if any entry is rejected."""
        with self._lock:
            enabled = dict(self._enabled)
            for name, value in values.items():
                spec = self._known.get(name)
                if spec is None:
                    raise ValueError(f"unrecognized feature gate: {name}")
                if spec.lock_to_default and spec.default != value:
                    raise ValueError(
                        f"cannot set feature gate {name} to {value}, "
                        f"feature is locked to {spec.default}"
                    )
                enabled[name] = bool(value)
                if spec.pre_release is PreRelease.DEPRECATED:
                    logger.warning(
                        "Setting deprecated feature gate %s=%s. It will be removed in a future release.",
                        name,
                        value,
                    )
            self._enabled = enabled

    def known_features(self) -> List[str]:
        """Describe the non-GA, non-deprecated features, sorted."""
        with self._lock:
            items = list(self._known.items())
        return sorted(
            f"{name}=true|false ({spec.pre_release.value} - default={str(spec.default).lower()})"
            for name, spec in items
            if spec.pre_release not in (PreRelease.GA, PreRelease.DEPRECATED)
        )


NODE_TO_MASTER_TRAFFIC = "NodeToMasterTraffic"

DEFAULT_FEATURE_GATES: Dict[str, FeatureSpec] = {
    NODE_TO_MASTER_TRAFFIC: FeatureSpec(default=False, pre_release=PreRelease.ALPHA),
}

DEFAULT_MUTABLE_FEATURE_GATE = FeatureGate()
DEFAULT_MUTABLE_FEATURE_GATE.add(DEFAULT_FEATURE_GATES)