"""
Phase runner.

A flow is a fixed, ordered list of numbered phases. ``--from N`` resumes a
failed run at phase N; earlier phases are skipped, later ones all run. There
is no rollback: each phase is written to be safe to re-run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Sequence

from platform_bootstrap.errors import BootstrapError


@dataclass(frozen=True)
class Phase:
    number: int
    label: str
    func: Callable[[Any], None]


def print_banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def run_phases(phases: Sequence[Phase], context: Any, from_phase: int = 1) -> list[int]:
    """
    Run ``phases`` in order starting at ``from_phase``.

    Returns the numbers of the phases that ran. The first exception aborts
    the run and propagates.

    Raises:
        BootstrapError: If from_phase is not one of the phase numbers
    """
    numbers = [p.number for p in phases]
    if from_phase not in numbers:
        raise BootstrapError(
            f"Invalid --from phase {from_phase}; valid phases: {', '.join(map(str, numbers))}"
        )
    ran: list[int] = []
    for phase in sorted(phases, key=lambda p: p.number):
        if phase.number < from_phase:
            print(f"Skipping phase {phase.number}: {phase.label}")
            continue
        print_banner(f"PHASE {phase.number}: {phase.label.upper()}")
        phase.func(context)
        ran.append(phase.number)
    return ran
