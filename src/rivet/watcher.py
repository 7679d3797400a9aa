from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from rivet.errors import CancellationError, RivetError
from rivet.process_runner import ProcessRunner
from rivet.repo_inventory import RepoInventory
from rivet.repository import DEFAULT_SETTLE_SECONDS, RepositoryController

logger = logging.getLogger(__name__)


class FleetError(RuntimeError):
    pass


@dataclass(slots=True)
class MonitorSummary:
    repo_id: str
    cycles: int = 0
    failures: int = 0
    deployments: int = 0


def _run_cycle(
    controller: RepositoryController,
    *,
    cancel: threading.Event,
    summary: MonitorSummary,
) -> None:
    summary.cycles += 1
    try:
        outcome = controller.process_once(cancel=cancel)
    except CancellationError as e:
        logger.info("repo_id=%s: cycle interrupted: %s", controller.repo_id, e)
        return
    except RivetError as e:
        summary.failures += 1
        logger.error("repo_id=%s: cycle failed: %s", controller.repo_id, e)
        return
    except Exception:
        # Monitors outlive any single cycle, including ones that hit a bug.
        summary.failures += 1
        logger.exception("repo_id=%s: unexpected error during cycle", controller.repo_id)
        return

    if outcome == "deployed":
        summary.deployments += 1


def _next_deadline(previous: float, interval_seconds: float, *, now: float) -> float:
    deadline = previous + interval_seconds
    # Ticks missed while a cycle ran collapse into one immediate tick.
    return max(deadline, now)


def monitor_repository(
    controller: RepositoryController,
    *,
    interval_seconds: float,
    cancel: threading.Event,
) -> MonitorSummary:
    """Run ``process_once`` now and then every ``interval_seconds`` until cancelled.

    Cycle failures are logged and never stop the loop. When a tick and the
    cancel event are both ready, cancellation wins.
    """
    if interval_seconds <= 0:
        raise FleetError(f"interval_seconds must be > 0, got {interval_seconds}")

    summary = MonitorSummary(repo_id=controller.repo_id)
    logger.info("repo_id=%s: monitoring every %ss", controller.repo_id, interval_seconds)

    _run_cycle(controller, cancel=cancel, summary=summary)

    deadline = time.monotonic() + interval_seconds
    while not cancel.is_set():
        if cancel.wait(max(0.0, deadline - time.monotonic())):
            break
        logger.debug("repo_id=%s: scheduled check", controller.repo_id)
        _run_cycle(controller, cancel=cancel, summary=summary)
        deadline = _next_deadline(deadline, interval_seconds, now=time.monotonic())

    logger.info(
        "repo_id=%s: monitoring stopped (cycles=%d failures=%d deployments=%d)",
        controller.repo_id,
        summary.cycles,
        summary.failures,
        summary.deployments,
    )
    return summary


class Fleet:
    """Owns every repository controller and the monitor thread driving each one.

    Each controller is handed to exactly one thread per ``run``, and ``run``
    cannot overlap itself, so controller state never needs locking.
    """

    def __init__(self, controllers: Sequence[RepositoryController]) -> None:
        self.controllers = tuple(controllers)
        if len({id(c) for c in self.controllers}) != len(self.controllers):
            raise FleetError("A controller may appear in a fleet only once.")
        self._run_guard = threading.Lock()

    @classmethod
    def from_inventory(
        cls,
        inventory: RepoInventory,
        *,
        runner: ProcessRunner,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
    ) -> Fleet:
        return cls(
            [
                RepositoryController(repo, runner, settle_seconds=settle_seconds)
                for repo in inventory.repositories
            ]
        )

    def __len__(self) -> int:
        return len(self.controllers)

    def run(self, *, cancel: threading.Event) -> tuple[MonitorSummary, ...]:
        if not self.controllers:
            logger.info("No repositories to monitor.")
            return ()
        if not self._run_guard.acquire(blocking=False):
            raise FleetError("Fleet.run is already active; controllers cannot be monitored twice.")

        try:
            logger.info("Monitoring %d repositories", len(self.controllers))
            with ThreadPoolExecutor(
                max_workers=len(self.controllers),
                thread_name_prefix="rivet-monitor",
            ) as pool:
                futures = [
                    pool.submit(
                        monitor_repository,
                        controller,
                        interval_seconds=controller.config.check_interval_seconds,
                        cancel=cancel,
                    )
                    for controller in self.controllers
                ]
                summaries = tuple(fut.result() for fut in futures)
        finally:
            self._run_guard.release()

        logger.info("All repository monitors shut down.")
        return summaries
