"""Fault-injection policy: weighted delay and drop rules per procedure and client."""

from __future__ import annotations

import json
import math
import random
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Union

DELAY_KEY = "__rpc_delay__"
DROP_KEY = "__rpc_drop__"
DEFAULT_CLIENT = "default"

_RULE_ALIASES = {
    DELAY_KEY: DELAY_KEY,
    "delay": DELAY_KEY,
    "rpc_delay": DELAY_KEY,
    DROP_KEY: DROP_KEY,
    "drop": DROP_KEY,
    "rpc_drop": DROP_KEY,
}

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")

Weights = dict[int, float]
ProcRules = dict[str, Weights]
RuleSet = dict[str, ProcRules]


class PolicyError(ValueError):
    """Raised for malformed policies and invalid rule edits."""


@dataclass(frozen=True)
class Action:
    """What to do with the reply to one call."""

    delay_ms: int = 0
    drop: bool = False


def _normalize_rule_type(rule_type: str) -> str:
    try:
        return _RULE_ALIASES[rule_type]
    except KeyError:
        raise PolicyError(f"unsupported rule type {rule_type!r}") from None


def _reject_constant(name: str) -> float:
    raise PolicyError(f"invalid JSON number {name}")


def _parse_delay_key(text: str, proc: str, client: str) -> int:
    match = _LEADING_INT.match(text)
    if match is None or int(match.group(1)) < 0:
        raise PolicyError(f"proc {proc} client {client}: bad delay key {text!r}")
    return int(match.group(1))


def _parse_share(value: Any, proc: str, client: str, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise PolicyError(f"proc {proc} client {client}: bad share for {key!r}")
    return float(value)


def _parse_proc_rules(value: Any) -> RuleSet:
    if not isinstance(value, dict):
        raise PolicyError("expected object")
    rules: RuleSet = {}
    for proc, client_obj in value.items():
        if not isinstance(client_obj, dict):
            raise PolicyError(f"proc {proc}: expected client object")
        client_rules: ProcRules = {}
        for client, weights_obj in client_obj.items():
            if not isinstance(weights_obj, dict):
                raise PolicyError(f"proc {proc} client {client}: expected weight map")
            client_rules[client] = {
                _parse_delay_key(key, proc, client): _parse_share(share, proc, client, key)
                for key, share in weights_obj.items()
            }
        rules[proc] = client_rules
    return rules


def _copy_rules(rules: RuleSet) -> RuleSet:
    return {
        proc: {client: dict(weights) for client, weights in clients.items()}
        for proc, clients in rules.items()
    }


def _json_number(value: float) -> Union[int, float]:
    if value.is_integer() and abs(value) < 1e21:
        return int(value)
    return value


def _serialize(rules: RuleSet) -> dict[str, Any]:
    return {
        proc: {
            client: {str(ms): _json_number(share) for ms, share in sorted(weights.items())}
            for client, weights in sorted(clients.items())
        }
        for proc, clients in sorted(rules.items())
    }


def _weighted_pick(rng: random.Random, weights: Weights) -> int | None:
    total = sum(weights.values())
    if total <= 0:
        return None
    target = rng.random() * total
    upto = 0.0
    for ms, weight in weights.items():
        upto += weight
        if upto >= target:
            return ms
    return None


class Manager:
    """Thread-safe holder of the active delay and drop rules."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._lock = threading.Lock()
        self._rules: dict[str, RuleSet] = {DELAY_KEY: {}, DROP_KEY: {}}
        self._rng = rng if rng is not None else random.Random()

    def load_file(self, path: Union[str, Path]) -> None:
        """Replace the policy with the one stored in the JSON file at ``path``."""
        self.load_bytes(Path(path).read_bytes())

    def load_bytes(self, data: Union[bytes, str]) -> None:
        """Replace the policy with one decoded from JSON ``data``."""
        try:
            source = json.loads(data, parse_constant=_reject_constant)
        except json.JSONDecodeError as exc:
            raise PolicyError(f"invalid policy JSON: {exc}") from exc
        if source is None:
            source = {}
        if not isinstance(source, dict):
            raise PolicyError("policy must be a JSON object")

        loaded: dict[str, RuleSet] = {DELAY_KEY: {}, DROP_KEY: {}}
        for key in (DELAY_KEY, DROP_KEY):
            if key in source:
                try:
                    loaded[key] = _parse_proc_rules(source[key])
                except PolicyError as exc:
                    raise PolicyError(f"parse {key}: {exc}") from exc

        with self._lock:
            self._rules = loaded

    def snapshot(self) -> dict[str, RuleSet]:
        """Return a deep copy of the current rules keyed by rule type."""
        with self._lock:
            return {key: _copy_rules(rules) for key, rules in self._rules.items()}

    def to_json(self) -> str:
        """Serialize the rules as indented JSON with sorted keys."""
        with self._lock:
            out = {key: _serialize(rules) for key, rules in self._rules.items()}
        return json.dumps(out, indent=2, sort_keys=True)

    def set_rule(
        self,
        rule_type: str,
        procedure: str,
        client: str,
        weights: Mapping[int, float],
    ) -> None:
        """Install the weighted rule for ``procedure`` and ``client``."""
        key = _normalize_rule_type(rule_type)
        if not procedure:
            raise PolicyError("procedure is required")
        client = client or DEFAULT_CLIENT
        if not weights:
            raise PolicyError("weights must not be empty")
        for ms, share in weights.items():
            if ms < 0:
                raise PolicyError("delay must be >= 0")
            if share < 0:
                raise PolicyError("share must be >= 0")

        new_weights = {int(ms): float(share) for ms, share in weights.items()}
        with self._lock:
            self._rules[key].setdefault(procedure, {})[client] = new_weights

    def delete_rule(self, rule_type: str, procedure: str, client: str) -> None:
        """Remove a client's rule, or every rule of ``procedure`` when client is empty."""
        key = _normalize_rule_type(rule_type)
        if not procedure:
            raise PolicyError("procedure is required")

        with self._lock:
            target = self._rules[key]
            if procedure not in target:
                return
            if not client:
                del target[procedure]
                return
            target[procedure].pop(client, None)
            if not target[procedure]:
                del target[procedure]

    def _lookup(self, rules: RuleSet, proc_name: str, client_ip: str) -> int | None:
        clients = rules.get(proc_name)
        if clients is None:
            return None
        weights = clients.get(client_ip)
        if weights is None:
            weights = clients.get(DEFAULT_CLIENT)
        if not weights:
            return None
        return _weighted_pick(self._rng, weights)

    def action_for(self, proc_name: str, client_ip: str) -> Action:
        """Pick the action for a call; a drop rule overrides any delay rule."""
        with self._lock:
            delay_ms = 0
            drop = False
            picked = self._lookup(self._rules[DELAY_KEY], proc_name, client_ip)
            if picked is not None:
                delay_ms = picked
            picked = self._lookup(self._rules[DROP_KEY], proc_name, client_ip)
            if picked is not None:
                delay_ms = picked
                drop = True
        return Action(delay_ms=delay_ms, drop=drop)