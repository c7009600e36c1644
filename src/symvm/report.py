# SPDX-License-Identifier: AGPL-3.0

"""
JSON-compatible renderings of findings. Integers that may exceed 2**53 are
rendered as strings so that no consumer loses precision.
"""

import json
from collections.abc import Iterable

from symvm.bitvec import Word
from symvm.explorer import Exploration, Finding
from symvm.expr import to_smtlib, to_sexpr
from symvm.memory import Byte
from symvm.state import EventLog
from symvm.utils import hexify


def word_to_json(w: Word) -> str:
    return hexify(int(w)) if w.is_concrete else to_sexpr(w.expr)


def data_to_json(data: Iterable[Byte]) -> str | list[str]:
    """0x-prefixed hex when fully concrete, otherwise one entry per byte"""

    data = list(data)
    if all(isinstance(b, int) for b in data):
        return "0x" + bytes(data).hex()

    return [f"0x{b:02x}" if isinstance(b, int) else to_sexpr(b) for b in data]


def log_to_dict(log: EventLog) -> dict:
    return {
        "address": hexify(log.address, 40),
        "pc": log.pc,
        "topics": [word_to_json(t) for t in log.topics],
        "data": data_to_json(log.data),
    }


def witness_to_dict(witness: dict[str, int] | None) -> dict | None:
    if witness is None:
        return None

    return {
        name: {"decimal": str(value), "hex": hexify(value)}
        for name, value in sorted(witness.items())
    }


def finding_to_dict(finding: Finding) -> dict:
    return {
        "kind": str(finding.kind),
        "address": hexify(finding.address, 40),
        "pc": finding.pc,
        "path_id": finding.path_id,
        "path": [to_sexpr(c) for c in finding.path],
        "smtlib": to_smtlib(finding.path),
        "witness": witness_to_dict(finding.witness),
        "confirmed": finding.confirmed,
        "logs": [log_to_dict(log) for log in finding.logs],
        "output": data_to_json(finding.output),
        "reason": finding.reason,
        "steps": finding.steps,
        "forks": finding.forks,
    }


def findings_to_json(findings: Iterable[Finding], indent: int | None = 2) -> str:
    return json.dumps([finding_to_dict(f) for f in findings], indent=indent)


def summary_to_dict(exploration: Exploration) -> dict:
    stats = exploration.stats
    kinds = sorted(stats.kinds.items(), key=lambda kv: kv[0].value)
    return {
        "status": str(exploration.status),
        "stop_reason": exploration.stop_reason,
        "findings": {str(kind): n for kind, n in kinds},
        "states": stats.states,
        "steps": stats.steps,
        "branches": stats.branches,
        "infeasible": stats.infeasible,
        "unknown": stats.unknown,
        "evicted": stats.evicted,
        "elapsed": round(stats.elapsed, 3),
    }
