"""Typed remote command builders.

Every command sent to a node is assembled here from argument vectors and
rendered with ``shlex`` quoting. Callers never splice names, paths or
values into a command string themselves.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, replace

COMPRESSED_SUFFIXES = (".gz", ".tgz")

# docker ps / images output formats
NAMES_FORMAT = "{{.Names}}"
IMAGE_REF_FORMAT = "{{.Repository}}:{{.Tag}}"


@dataclass(frozen=True)
class RemoteCommand:
    """A command line for a remote POSIX shell.

    Attributes:
        argv: Program and arguments
        stdin_from: Optional producer piped into argv (``producer | argv``)
        stdout_to: Optional file receiving stdout and stderr
        then: Optional command run only if this one succeeds (``&&``)
    """
    argv: tuple[str, ...]
    stdin_from: tuple[str, ...] | None = None
    stdout_to: str | None = None
    then: "RemoteCommand | None" = None

    def and_then(self, other: "RemoteCommand") -> "RemoteCommand":
        if self.then is None:
            return replace(self, then=other)
        return replace(self, then=self.then.and_then(other))

    def render(self) -> str:
        line = shlex.join(self.argv)
        if self.stdin_from:
            line = f"{shlex.join(self.stdin_from)} | {line}"
        if self.stdout_to:
            line = f"{line} > {shlex.quote(self.stdout_to)} 2>&1"
        if self.then is not None:
            line = f"{line} && {self.then.render()}"
        return line

    def __str__(self) -> str:
        return self.render()


def is_compressed(archive: str) -> bool:
    return archive.endswith(COMPRESSED_SUFFIXES)


class CommandBuilder:
    """Builds container runtime and file commands for one docker prefix.

    The prefix (``sudo docker`` by default) is split into argv words so it
    can include a privilege wrapper.
    """

    def __init__(self, docker_prefix: str = "sudo docker"):
        self.docker_prefix = tuple(shlex.split(docker_prefix))
        if not self.docker_prefix:
            raise ValueError("docker prefix must not be empty")

    def _docker(self, *args: str) -> RemoteCommand:
        return RemoteCommand(argv=self.docker_prefix + args)

    # --- Container queries ---

    def ps_names(self, include_stopped: bool = False) -> RemoteCommand:
        if include_stopped:
            return self._docker("ps", "-a", "--format", NAMES_FORMAT)
        return self._docker("ps", "--format", NAMES_FORMAT)

    def images(self, repository: str) -> RemoteCommand:
        return self._docker("images", "--format", IMAGE_REF_FORMAT, repository)

    # --- Container lifecycle ---

    def stop(self, name: str) -> RemoteCommand:
        return self._docker("stop", name)

    def kill(self, name: str) -> RemoteCommand:
        return self._docker("kill", name)

    def rm(self, name: str, force: bool = False) -> RemoteCommand:
        if force:
            return self._docker("rm", "-f", name)
        return self._docker("rm", name)

    def run(
        self,
        name: str,
        image: str,
        env_file: str | None = None,
        run_args: list[str] | None = None,
    ) -> RemoteCommand:
        args: list[str] = ["run", "-d", "--name", name]
        if env_file:
            args.extend(["--env-file", env_file])
        args.extend(run_args or [])
        args.append(image)
        return self._docker(*args)

    # --- Logs ---

    def logs(self, name: str, tail: int | None = None, follow: bool = False) -> RemoteCommand:
        args: list[str] = ["logs"]
        if follow:
            args.append("-f")
        if tail is not None:
            args.extend(["--tail", str(tail)])
        args.append(name)
        return self._docker(*args)

    def logs_to_file(self, name: str, path: str) -> RemoteCommand:
        return replace(self._docker("logs", name), stdout_to=path)

    # --- Images ---

    def rmi(self, image: str) -> RemoteCommand:
        return self._docker("rmi", image)

    def load(self, archive: str) -> RemoteCommand:
        if is_compressed(archive):
            return RemoteCommand(
                argv=self.docker_prefix + ("load",),
                stdin_from=("gunzip", "-c", archive),
            )
        return self._docker("load", "-i", archive)

    # --- Files ---

    @staticmethod
    def mkdir_p(path: str) -> RemoteCommand:
        return RemoteCommand(argv=("mkdir", "-p", path))

    @staticmethod
    def remove_file(path: str) -> RemoteCommand:
        return RemoteCommand(argv=("rm", "-f", path))

    @staticmethod
    def read_file(path: str) -> RemoteCommand:
        return RemoteCommand(argv=("cat", path))

    @staticmethod
    def write_file(path: str) -> RemoteCommand:
        """Write stdin to ``path`` through a temp file renamed into place."""
        tmp_path = f"{path}.tmp"
        write = RemoteCommand(argv=("tee", tmp_path), stdout_to="/dev/null")
        return write.and_then(RemoteCommand(argv=("mv", "-f", tmp_path, path)))
