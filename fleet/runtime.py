"""Interpretation of container runtime output.

The remote runtime only exposes text, so every pattern match against
command output lives here. Control flow elsewhere consumes the structured
results (sets of names, StopSignal, booleans).
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from fleet.naming import image_repository
from fleet.state import StopSignal

_MISSING_CONTAINER_RE = re.compile(r"no such container", re.IGNORECASE)
_MISSING_IMAGE_RE = re.compile(r"no such image|image not known", re.IGNORECASE)
_IMAGE_IN_USE_RE = re.compile(
    r"is using its referenced image|image is being used|conflict: unable to (delete|remove)",
    re.IGNORECASE,
)
_MISSING_FILE_RE = re.compile(r"no such file or directory", re.IGNORECASE)
# "zombie" as reported by the runtime wrapper, or dockerd's own wording when
# the process never exits after SIGTERM/SIGKILL.
_ZOMBIE_RE = re.compile(r"zombie|did not receive an exit event", re.IGNORECASE)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one remote command that reached the node."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined, as an operator would see them."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


def parse_names(stdout: str) -> set[str]:
    """Parse ``docker ps --format {{.Names}}`` output into a set of names."""
    return {line.strip() for line in stdout.splitlines() if line.strip()}


def classify_stop(result: CommandResult) -> StopSignal:
    """Classify the answer to a graceful ``docker stop``."""
    text = result.output
    if _ZOMBIE_RE.search(text):
        return StopSignal.ZOMBIE
    if result.ok:
        return StopSignal.STOPPED
    if _MISSING_CONTAINER_RE.search(text):
        return StopSignal.ABSENT
    return StopSignal.ERROR


def is_missing_container(result: CommandResult) -> bool:
    return not result.ok and bool(_MISSING_CONTAINER_RE.search(result.output))


def is_missing_image(result: CommandResult) -> bool:
    return not result.ok and bool(_MISSING_IMAGE_RE.search(result.output))


def is_image_in_use(result: CommandResult) -> bool:
    return not result.ok and bool(_IMAGE_IN_USE_RE.search(result.output))


def is_missing_file(result: CommandResult) -> bool:
    return not result.ok and bool(_MISSING_FILE_RE.search(result.output))


def image_listed(stdout: str, image: str) -> bool:
    """Check ``docker images --format {{.Repository}}:{{.Tag}}`` output for an image."""
    refs = parse_names(stdout)
    if image in refs:
        return True
    repository = image_repository(image)
    return any(image_repository(ref) == repository for ref in refs)
