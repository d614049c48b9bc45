"""
Environmental Consulting Operations Core
Project status rule table.

Five independent status dimensions live on a Project.  Each dimension owns a
finite-state graph (current value → legal next values), and some
(dimension, value) assignments require other dimensions to already hold
specific values.  This module is pure data: the graphs and requirements are
built through validated constructors at import time, so a typo in a value or
a dangling edge fails on import instead of at request time.

Lifecycle (``status``):
    planned → checklist_finalized → verification_passed → execution_in_progress
    → execution_complete → draft_prepared → client_review → account_closure
    → completed (terminal)

Several dimensions may walk backwards (e.g. ``paid → partial`` for refunds,
``passed → failed`` when issues surface later).
"""

from dataclasses import dataclass, field
from enum import Enum


class Dimension(str, Enum):
    """Status axes tracked on a Project.  Values are the column names."""

    STATUS = "status"
    VERIFICATION = "verification_status"
    EXECUTION = "execution_status"
    CLIENT_REVIEW = "client_review_status"
    PAYMENT = "payment_status"

    @classmethod
    def parse(cls, key: str) -> "Dimension":
        """Resolve a column name (``verification_status``) or legacy camelCase key."""
        try:
            return cls(key)
        except ValueError:
            pass
        legacy = _CAMEL_ALIASES.get(key)
        if legacy is None:
            raise ValueError(f"Unknown status dimension: {key!r}")
        return legacy


_CAMEL_ALIASES = {
    "verificationStatus": Dimension.VERIFICATION,
    "executionStatus": Dimension.EXECUTION,
    "clientReviewStatus": Dimension.CLIENT_REVIEW,
    "paymentStatus": Dimension.PAYMENT,
}


@dataclass(frozen=True)
class TransitionGraph:
    """Finite-state graph for one dimension.

    ``edges`` maps every value to the tuple of values reachable in one step.
    Every value must appear as a key (terminal values map to an empty tuple)
    and every target must itself be a known value.
    """

    dimension: Dimension
    initial: str
    edges: dict[str, tuple[str, ...]]

    def __post_init__(self):
        values = set(self.edges)
        if self.initial not in values:
            raise ValueError(f"{self.dimension.value}: initial value {self.initial!r} is not in the graph")
        for source, targets in self.edges.items():
            unknown = set(targets) - values
            if unknown:
                raise ValueError(
                    f"{self.dimension.value}: edge {source!r} → {sorted(unknown)} targets unknown values"
                )
            if source in targets:
                raise ValueError(f"{self.dimension.value}: self-loop on {source!r}")

    @property
    def values(self) -> frozenset[str]:
        return frozenset(self.edges)

    def allowed_from(self, current: str) -> tuple[str, ...]:
        return self.edges.get(current, ())

    def can_transition(self, current: str, new: str) -> bool:
        return new in self.allowed_from(current)

    def is_terminal(self, value: str) -> bool:
        return value in self.edges and not self.edges[value]


@dataclass(frozen=True)
class Requirement:
    """``dimension=value`` may only hold while every ``requires`` entry is satisfied.

    ``requires`` maps another dimension to the set of values it may hold.
    """

    dimension: Dimension
    value: str
    requires: dict[Dimension, frozenset[str]] = field(default_factory=dict)

    def unmet(self, state: dict[Dimension, str]) -> list[dict]:
        """Return one entry per unmet requirement against a full status tuple."""
        failures = []
        for req_dim, allowed in self.requires.items():
            actual = state.get(req_dim)
            if actual not in allowed:
                failures.append({
                    "dimension": self.dimension.value,
                    "value": self.value,
                    "requires": req_dim.value,
                    "required_values": sorted(allowed),
                    "actual": actual,
                })
        return failures


def _graph(dimension, initial, edges):
    return TransitionGraph(
        dimension=dimension,
        initial=initial,
        edges={src: tuple(dst) for src, dst in edges.items()},
    )


# ── Transition graphs ────────────────────────────────────────────────────────

TRANSITION_GRAPHS: dict[Dimension, TransitionGraph] = {
    Dimension.STATUS: _graph(Dimension.STATUS, "planned", {
        "planned":               ["checklist_finalized"],
        "checklist_finalized":   ["verification_passed", "planned"],
        "verification_passed":   ["execution_in_progress"],
        "execution_in_progress": ["execution_complete", "verification_passed"],
        "execution_complete":    ["draft_prepared"],
        "draft_prepared":        ["client_review"],
        "client_review":         ["draft_prepared", "account_closure"],
        "account_closure":       ["completed"],
        "completed":             [],
    }),
    Dimension.VERIFICATION: _graph(Dimension.VERIFICATION, "pending", {
        "pending":            ["under_verification"],
        "under_verification": ["passed", "failed", "pending"],
        "passed":             ["failed"],
        "failed":             ["pending", "under_verification"],
    }),
    Dimension.EXECUTION: _graph(Dimension.EXECUTION, "not_started", {
        "not_started": ["in_progress"],
        "in_progress": ["complete", "not_started"],
        "complete":    ["in_progress"],
    }),
    Dimension.CLIENT_REVIEW: _graph(Dimension.CLIENT_REVIEW, "not_started", {
        "not_started":       ["in_review"],
        "in_review":         ["changes_requested", "client_approved", "not_started"],
        "changes_requested": ["revised_shared", "in_review"],
        "revised_shared":    ["in_review"],
        "client_approved":   ["changes_requested"],
    }),
    Dimension.PAYMENT: _graph(Dimension.PAYMENT, "pending", {
        "pending": ["partial", "paid"],
        "partial": ["paid", "pending"],
        "paid":    ["partial", "pending"],
    }),
}


def _requirement(dimension, value, **requires):
    graph = TRANSITION_GRAPHS[dimension]
    if value not in graph.values:
        raise ValueError(f"Requirement on unknown value {dimension.value}={value!r}")
    parsed = {}
    for key, allowed in requires.items():
        req_dim = Dimension(key)
        allowed_set = frozenset([allowed] if isinstance(allowed, str) else allowed)
        unknown = allowed_set - TRANSITION_GRAPHS[req_dim].values
        if unknown:
            raise ValueError(f"Requirement {dimension.value}={value} names unknown {key} values {sorted(unknown)}")
        parsed[req_dim] = allowed_set
    return Requirement(dimension=dimension, value=value, requires=parsed)


# ── Inter-dimension constraints ──────────────────────────────────────────────

INTER_DIMENSION_REQUIREMENTS: dict[tuple[Dimension, str], Requirement] = {
    (r.dimension, r.value): r
    for r in (
        _requirement(Dimension.EXECUTION, "in_progress", verification_status="passed"),
        _requirement(Dimension.EXECUTION, "complete", verification_status="passed"),
        _requirement(Dimension.STATUS, "verification_passed", verification_status="passed"),
        _requirement(
            Dimension.STATUS, "execution_in_progress",
            verification_status="passed",
            execution_status=("in_progress", "complete"),
        ),
        _requirement(
            Dimension.STATUS, "execution_complete",
            verification_status="passed",
            execution_status="complete",
        ),
        _requirement(
            Dimension.STATUS, "client_review",
            client_review_status=("in_review", "changes_requested", "revised_shared", "client_approved"),
        ),
        _requirement(
            Dimension.STATUS, "completed",
            verification_status="passed",
            execution_status="complete",
            client_review_status="client_approved",
            payment_status="paid",
        ),
    )
}


# ── Lookups ──────────────────────────────────────────────────────────────────

PROJECT_STATUSES = TRANSITION_GRAPHS[Dimension.STATUS].values
GATE_STATUS = "planned"
GATE_EXIT_STATUS = "checklist_finalized"


def allowed_transitions(dimension: Dimension, current: str) -> list[str]:
    """Values reachable in one step from ``current``."""
    return list(TRANSITION_GRAPHS[dimension].allowed_from(current))


def unmet_requirements(state: dict[Dimension, str]) -> list[dict]:
    """Evaluate every constraint triggered by the values present in ``state``."""
    failures = []
    for dimension, value in state.items():
        rule = INTER_DIMENSION_REQUIREMENTS.get((dimension, value))
        if rule is not None:
            failures.extend(rule.unmet(state))
    return failures
