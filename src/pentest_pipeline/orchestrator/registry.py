"""Static registry of assessment units and the phase graph they form."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from pentest_pipeline.orchestrator.errors import (
    PrerequisitesNotMetError,
    RegistryCycleError,
    UnitNotFoundError,
)
from pentest_pipeline.orchestrator.models import Session

VULN_TYPES: tuple[str, ...] = ("sqli", "codei", "ssti", "pathi", "xss", "auth", "ssrf", "authz")

_VULN_DISPLAY = {
    "sqli": "SQL injection",
    "codei": "code injection",
    "ssti": "template injection",
    "pathi": "path injection",
    "xss": "XSS",
    "auth": "authentication",
    "ssrf": "SSRF",
    "authz": "authorization",
}


@dataclass(slots=True, frozen=True)
class UnitSpec:
    """Immutable descriptor of one schedulable unit of work."""

    name: str
    display_name: str
    phase: str
    order: int
    prerequisites: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class PhaseSpec:
    name: str
    units: tuple[str, ...]
    parallel: bool = False


def _build_units() -> dict[str, UnitSpec]:
    units = [
        UnitSpec("pre-recon", "Pre-recon code analysis", "pre-reconnaissance", 1),
        UnitSpec("login-check", "Login verification", "reconnaissance", 2, ("pre-recon",)),
        UnitSpec("recon", "Reconnaissance", "reconnaissance", 3, ("login-check",)),
        UnitSpec("recon-verify", "Recon verification", "reconnaissance", 4, ("recon",)),
        UnitSpec("api-fuzzer", "API fuzzing", "api-fuzzing", 5, ("recon-verify",)),
    ]
    order = 6
    for vuln_type in VULN_TYPES:
        units.append(
            UnitSpec(
                f"{vuln_type}-vuln",
                f"{_VULN_DISPLAY[vuln_type]} analysis",
                "vulnerability-analysis",
                order,
                ("api-fuzzer",),
            ),
        )
        order += 1
    for vuln_type in VULN_TYPES:
        units.append(
            UnitSpec(
                f"{vuln_type}-exploit",
                f"{_VULN_DISPLAY[vuln_type]} exploitation",
                "exploitation",
                order,
                (f"{vuln_type}-vuln",),
            ),
        )
        order += 1
    units.append(
        UnitSpec(
            "report",
            "Executive security report",
            "reporting",
            order,
            tuple(f"{vuln_type}-exploit" for vuln_type in VULN_TYPES),
        ),
    )
    return {unit.name: unit for unit in units}


UNITS: dict[str, UnitSpec] = _build_units()

PHASE_ORDER: tuple[str, ...] = (
    "pre-reconnaissance",
    "reconnaissance",
    "api-fuzzing",
    "vulnerability-analysis",
    "exploitation",
    "reporting",
)

_PARALLEL_PHASES = frozenset({"vulnerability-analysis", "exploitation"})

PHASES: dict[str, PhaseSpec] = {
    phase: PhaseSpec(
        name=phase,
        units=tuple(
            unit.name
            for unit in sorted(UNITS.values(), key=lambda item: item.order)
            if unit.phase == phase
        ),
        parallel=phase in _PARALLEL_PHASES,
    )
    for phase in PHASE_ORDER
}


def build_dependency_graph() -> dict[str, tuple[str, ...]]:
    """Return prerequisite-of edges: unit -> units that depend on it."""

    dependents: dict[str, list[str]] = {name: [] for name in UNITS}
    for unit in UNITS.values():
        for prerequisite in unit.prerequisites:
            if prerequisite not in UNITS:
                raise RegistryCycleError(
                    f"Unit '{unit.name}' depends on unknown unit '{prerequisite}'",
                    context={"unit": unit.name, "prerequisite": prerequisite},
                )
            dependents[prerequisite].append(unit.name)
    return {name: tuple(children) for name, children in dependents.items()}


def topological_order() -> list[str]:
    """Kahn's algorithm over the prerequisite graph; raises on cycles."""

    dependents = build_dependency_graph()
    indegree = {name: len(unit.prerequisites) for name, unit in UNITS.items()}
    ready = deque(
        sorted((name for name, degree in indegree.items() if degree == 0), key=_rank),
    )
    ordered: list[str] = []
    while ready:
        name = ready.popleft()
        ordered.append(name)
        for child in sorted(dependents[name], key=_rank):
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)
    if len(ordered) != len(UNITS):
        cyclic = sorted(name for name, degree in indegree.items() if degree > 0)
        raise RegistryCycleError(
            f"Unit registry contains a dependency cycle through: {', '.join(cyclic)}",
            context={"units": cyclic},
        )
    return ordered


def assert_acyclic() -> None:
    topological_order()
    for unit in UNITS.values():
        for prerequisite in unit.prerequisites:
            if UNITS[prerequisite].order >= unit.order:
                raise RegistryCycleError(
                    f"Unit '{unit.name}' is ranked before its prerequisite '{prerequisite}'",
                    context={"unit": unit.name, "prerequisite": prerequisite},
                )


def _rank(name: str) -> int:
    return UNITS[name].order


def validate_unit(name: str) -> UnitSpec:
    unit = UNITS.get(name)
    if unit is None:
        raise UnitNotFoundError(
            f"Unit '{name}' not recognized. Use 'agents' to list available units.",
            context={"unit": name, "available": sorted(UNITS)},
        )
    return unit


def validate_phase(name: str) -> PhaseSpec:
    phase = PHASES.get(name)
    if phase is None:
        raise UnitNotFoundError(
            f"Phase '{name}' not recognized. Valid phases: {', '.join(PHASE_ORDER)}",
            context={"phase": name},
        )
    return phase


def validate_unit_range(start: str, end: str) -> list[UnitSpec]:
    first = validate_unit(start)
    last = validate_unit(end)
    if first.order >= last.order:
        raise UnitNotFoundError(
            f"End unit '{end}' must come after start unit '{start}' in sequence.",
            context={"start": start, "end": end},
        )
    return [unit for unit in ordered_units() if first.order <= unit.order <= last.order]


def ordered_units() -> list[UnitSpec]:
    return sorted(UNITS.values(), key=lambda unit: unit.order)


def phase_for_unit(name: str) -> PhaseSpec:
    return PHASES[validate_unit(name).phase]


def units_after(name: str) -> list[str]:
    order = validate_unit(name).order
    return [unit.name for unit in ordered_units() if unit.order > order]


def is_exploit_unit(name: str) -> bool:
    return name.endswith("-exploit")


def is_vuln_unit(name: str) -> bool:
    return name.endswith("-vuln")


def vuln_type_of(name: str) -> str:
    """Return the vulnerability category of a `-vuln` or `-exploit` unit."""

    for suffix in ("-vuln", "-exploit"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    raise UnitNotFoundError(f"Unit '{name}' has no vulnerability category", context={"unit": name})


def counterpart_of(exploit_unit: str) -> str:
    return f"{vuln_type_of(exploit_unit)}-vuln"


def _prerequisite_satisfied(session: Session, unit: UnitSpec, prerequisite: str) -> bool:
    if prerequisite in session.completed_units:
        return True
    if prerequisite in session.skipped_units:
        return True
    # An exploit unit that never became eligible still unblocks the report.
    return unit.name == "report" and is_exploit_unit(prerequisite) and (
        counterpart_of(prerequisite) in session.completed_units
        and prerequisite not in session.failed_units
        and prerequisite not in session.running_units
    )


def check_prerequisites(session: Session, name: str) -> UnitSpec:
    unit = validate_unit(name)
    missing = [
        prerequisite
        for prerequisite in unit.prerequisites
        if not _prerequisite_satisfied(session, unit, prerequisite)
    ]
    if missing:
        raise PrerequisitesNotMetError(
            f"Cannot run '{name}': prerequisite units not completed: {', '.join(missing)}",
            context={"unit": name, "missing": missing, "completed": list(session.completed_units)},
        )
    return unit


def next_runnable(session: Session) -> UnitSpec | None:
    """Lowest-rank unit that is not done and whose prerequisites are satisfied."""

    for unit in ordered_units():
        if session.is_done(unit.name):
            continue
        if all(_prerequisite_satisfied(session, unit, name) for name in unit.prerequisites):
            return unit
    return None


assert_acyclic()
