from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Literal

from rivet.errors import (
    CancellationError,
    ConfigError,
    ExternalCommandError,
    FilesystemError,
    NotInitializedError,
    ScaleDownError,
)
from rivet.process_runner import CommandResult, ProcessRunner
from rivet.repo_inventory import RepositoryConfig

logger = logging.getLogger(__name__)

# Deploy assumes the service normally runs exactly this many instances; the
# current scale is never queried.
BASELINE_SCALE = 1
DEFAULT_SETTLE_SECONDS = 30.0
GIT_DIR_NAME = ".git"

CycleOutcome = Literal["up_to_date", "deployed"]


def _raise_if_cancelled(cancel: threading.Event, *, after: str) -> None:
    if cancel.is_set():
        raise CancellationError(f"cancelled after {after}")


class RepositoryController:
    """Lifecycle of one watched repository: clone, detect, pull, build, deploy.

    A controller is driven by a single monitor thread; its cached working path
    and ``initialized`` flag are never shared. Once initialized, the working
    copy is assumed to stay valid on disk for the controller's lifetime.
    """

    def __init__(
        self,
        config: RepositoryConfig,
        runner: ProcessRunner,
        *,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
    ) -> None:
        self.config = config
        self.runner = runner
        self.settle_seconds = settle_seconds
        self._working_path: Path | None = None
        self._initialized = False

    @property
    def repo_id(self) -> str:
        return self.config.repo_id

    @property
    def initialized(self) -> bool:
        return self._initialized

    def working_path(self) -> Path:
        if self._working_path is not None:
            return self._working_path
        if not self.config.base_path.strip() or not self.config.clone_dir_name.strip():
            raise ConfigError(f"repo_id={self.repo_id}: base_path or clone_dir_name is empty")
        try:
            base = Path(self.config.base_path).expanduser().absolute()
        except OSError as e:
            raise FilesystemError(
                f"repo_id={self.repo_id}: cannot resolve base_path {self.config.base_path!r}: {e}"
            ) from e
        self._working_path = base / self.config.clone_dir_name
        return self._working_path

    def compose_file_path(self) -> Path:
        compose_file = Path(self.config.compose_file).expanduser()
        if compose_file.is_absolute():
            return compose_file
        return self.working_path() / compose_file

    def _require_initialized(self, operation: str) -> Path:
        if not self._initialized:
            raise NotInitializedError(
                f"repo_id={self.repo_id}: {operation} requires an initialized working copy "
                "(call ensure_initialized first)"
            )
        return self.working_path()

    def _run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        cancel: threading.Event,
        step: str,
        check: bool = True,
    ) -> CommandResult:
        try:
            return self.runner.run(argv, cwd=cwd, cancel=cancel, check=check)
        except ExternalCommandError as e:
            logger.error(
                "repo_id=%s: %s failed (exit=%s): %s",
                self.repo_id,
                step,
                e.exit_code,
                e.stderr.strip() or e,
            )
            raise

    def _rev_parse(self, ref: str, *, cwd: Path, cancel: threading.Event) -> str:
        argv = ["git", "rev-parse", ref]
        completed = self._run(argv, cwd=cwd, cancel=cancel, step=f"rev-parse {ref}")
        value = completed.stdout.strip()
        if not value:
            raise ExternalCommandError(
                f"git rev-parse {ref!r} returned empty output.",
                argv=argv,
                exit_code=completed.exit_code,
                stderr=completed.stderr,
            )
        return value

    def ensure_initialized(self, *, cancel: threading.Event) -> None:
        if self._initialized:
            return

        workdir = self.working_path()
        git_dir = workdir / GIT_DIR_NAME
        try:
            git_dir.stat()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise FilesystemError(
                f"repo_id={self.repo_id}: failed to check for {git_dir}: {e}"
            ) from e
        else:
            logger.info("repo_id=%s: working copy already present at %s", self.repo_id, workdir)
            self._initialized = True
            return

        base = workdir.parent
        logger.info(
            "repo_id=%s: no working copy at %s; cloning %s (branch=%s)",
            self.repo_id,
            workdir,
            self.config.git_url,
            self.config.branch,
        )
        try:
            base.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(
                f"repo_id={self.repo_id}: failed to create base path {base}: {e}"
            ) from e

        self._run(
            ["git", "clone", "-b", self.config.branch, self.config.git_url, self.config.clone_dir_name],
            cwd=base,
            cancel=cancel,
            step="clone",
        )
        logger.info("repo_id=%s: clone complete", self.repo_id)
        self._initialized = True

    def check_for_updates(self, *, cancel: threading.Event) -> bool:
        """Return True only when the local branch can fast-forward to the remote.

        A local commit that is ahead of or has diverged from the remote is left
        alone and reported as "no updates".
        """
        workdir = self._require_initialized("check_for_updates")
        branch = self.config.branch

        self._run(
            ["git", "fetch", "origin", branch, "--prune"],
            cwd=workdir,
            cancel=cancel,
            step="fetch",
        )
        local = self._rev_parse("HEAD", cwd=workdir, cancel=cancel)
        remote_ref = f"origin/{branch}"
        remote = self._rev_parse(remote_ref, cwd=workdir, cancel=cancel)

        if local == remote:
            logger.info("repo_id=%s: up to date at %s", self.repo_id, local)
            return False

        ancestor = self._run(
            ["git", "merge-base", "--is-ancestor", local, remote],
            cwd=workdir,
            cancel=cancel,
            step="merge-base",
            check=False,
        )
        if ancestor.exit_code == 0:
            logger.info("repo_id=%s: updates found %s -> %s", self.repo_id, local, remote)
            return True
        if ancestor.exit_code == 1:
            logger.warning(
                "repo_id=%s: local %s is not an ancestor of %s %s (diverged or ahead); skipping",
                self.repo_id,
                local,
                remote_ref,
                remote,
            )
            return False

        details = ancestor.stderr.strip() or "<no output>"
        logger.error(
            "repo_id=%s: merge-base failed (exit=%s): %s",
            self.repo_id,
            ancestor.exit_code,
            details,
        )
        raise ExternalCommandError(
            f"git merge-base --is-ancestor failed (exit={ancestor.exit_code}): {details}",
            argv=ancestor.argv,
            exit_code=ancestor.exit_code,
            stdout=ancestor.stdout,
            stderr=ancestor.stderr,
        )

    def pull(self, *, cancel: threading.Event) -> None:
        workdir = self._require_initialized("pull")
        logger.info("repo_id=%s: pulling origin/%s (fast-forward only)", self.repo_id, self.config.branch)
        self._run(
            ["git", "pull", "origin", self.config.branch, "--ff-only"],
            cwd=workdir,
            cancel=cancel,
            step="pull",
        )

    def build(self, *, cancel: threading.Event) -> None:
        workdir = self._require_initialized("build")
        compose_file = self.compose_file_path()
        argv = ["docker", "compose", "-f", str(compose_file), "build", "--pull"]
        if self.config.service_name:
            argv.append(self.config.service_name)

        logger.info(
            "repo_id=%s: building service=%s from %s",
            self.repo_id,
            self.config.service_name,
            compose_file,
        )
        self._run(argv, cwd=workdir, cancel=cancel, step="build")

    def _scale_argv(self, compose_file: Path, *, instances: int, no_deps: bool) -> list[str]:
        service = self.config.service_name
        argv = ["docker", "compose", "-f", str(compose_file), "up", "-d"]
        if no_deps:
            argv.append("--no-deps")
        argv += ["--scale", f"{service}={instances}", "--no-recreate", service]
        return argv

    def deploy(self, *, cancel: threading.Event) -> None:
        """Replace the running instance by scaling up, settling, then scaling down.

        Cancellation during the settle wait returns immediately and leaves
        ``BASELINE_SCALE + 1`` instances running.
        """
        workdir = self._require_initialized("deploy")
        compose_file = self.compose_file_path()
        service = self.config.service_name
        scaled_up = BASELINE_SCALE + 1

        logger.info("repo_id=%s: scaling service=%s to %d", self.repo_id, service, scaled_up)
        self._run(
            self._scale_argv(compose_file, instances=scaled_up, no_deps=True),
            cwd=workdir,
            cancel=cancel,
            step="scale up",
        )

        logger.info(
            "repo_id=%s: waiting %.0fs for the new instance to settle",
            self.repo_id,
            self.settle_seconds,
        )
        if cancel.wait(self.settle_seconds):
            logger.warning(
                "repo_id=%s: cancelled during settle wait; service=%s left at %d instances",
                self.repo_id,
                service,
                scaled_up,
            )
            raise CancellationError(f"repo_id={self.repo_id}: cancelled during settle wait")

        logger.info("repo_id=%s: scaling service=%s back to %d", self.repo_id, service, BASELINE_SCALE)
        try:
            self._run(
                self._scale_argv(compose_file, instances=BASELINE_SCALE, no_deps=False),
                cwd=workdir,
                cancel=cancel,
                step="scale down",
            )
        except ExternalCommandError as e:
            logger.critical(
                "repo_id=%s: scale down failed; service=%s may be left at %d instances",
                self.repo_id,
                service,
                scaled_up,
            )
            raise ScaleDownError(
                f"repo_id={self.repo_id}: scale down of {service} failed: {e}",
                argv=e.argv,
                exit_code=e.exit_code,
                stdout=e.stdout,
                stderr=e.stderr,
            ) from e
        logger.info("repo_id=%s: deploy of service=%s complete", self.repo_id, service)

    def process_once(self, *, cancel: threading.Event) -> CycleOutcome:
        self.ensure_initialized(cancel=cancel)
        _raise_if_cancelled(cancel, after="initialization")

        if not self.check_for_updates(cancel=cancel):
            return "up_to_date"
        _raise_if_cancelled(cancel, after="update check")

        self.pull(cancel=cancel)
        _raise_if_cancelled(cancel, after="pull")

        self.build(cancel=cancel)
        _raise_if_cancelled(cancel, after="build")

        self.deploy(cancel=cancel)
        logger.info("repo_id=%s: updated and redeployed", self.repo_id)
        return "deployed"
