"""
Native installer backend for Workload-Py.

This module provides a wrapper around an external, machine-wide installer
command, handling subprocess calls and JSON parsing. The command is expected
to understand:

    <cmd> install --package <id>@<version>:<kind>=<source> [--package ...]
    <cmd> uninstall --id <id> --version <version>
    <cmd> list --json

Native installers usually need elevation and install a whole batch in one
native transaction, so this backend reports ``InstallationUnit.WORKLOADS``.
Manifests are still placed as files under the installation root, and
``uninstall`` only drops the usage marker; the garbage collector asks the
native installer to remove payloads.
"""

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

import orjson

from workload_py.engine import Backend, BackendAction, InstallationUnit
from workload_py.errors import BackendOperationError
from workload_py.fetch import PackageFetcher
from workload_py.manifest import ConcretePackage, Generation, PackKind
from workload_py.manifest.store import ManifestStore
from workload_py.records import InstallationRecordStore

logger = logging.getLogger("workload.engine.native")


class _NativeInstall(BackendAction):
    def __init__(
        self,
        backend: "NativeInstallerBackend",
        sources: List[Tuple[ConcretePackage, Optional[Path]]],
        generation: Generation,
    ):
        names = ", ".join(str(pkg) for pkg, _ in sources)
        super().__init__(f"native install {names} for {generation}")
        self.backend = backend
        self.sources = sources
        self.generation = generation
        self.placed: List[ConcretePackage] = []
        self.marked: List[ConcretePackage] = []

    def _apply(self) -> None:
        present = self.backend.installed_payloads()
        missing = [(pkg, src) for pkg, src in self.sources if pkg not in present]
        if missing:
            unfetched = [str(pkg) for pkg, src in missing if src is None]
            if unfetched:
                raise BackendOperationError(
                    "Packs disappeared while installing", ", ".join(unfetched)
                )
            args = ["install"]
            for pkg, src in missing:
                args.extend(
                    ["--package", f"{pkg.id}@{pkg.version}:{pkg.kind.value}={src}"]
                )
            self.backend._run_command(args)
            self.placed = [pkg for pkg, _ in missing]
        try:
            for pkg, _ in self.sources:
                if self.backend.records.add_pack_marker(pkg, self.generation):
                    self.marked.append(pkg)
        except OSError as e:
            self._undo()
            raise BackendOperationError(
                f"Failed to record usage for {self.generation}", str(e)
            ) from e

    def _undo(self) -> None:
        for pkg in reversed(self.marked):
            self.backend.records.remove_pack_marker(pkg, self.generation)
        self.marked = []
        for pkg in reversed(self.placed):
            self.backend.remove_payload(pkg)
        self.placed = []


class NativeInstallerBackend(Backend):
    """Backend that delegates payload placement to a native installer command."""

    name = "native"
    installation_unit = InstallationUnit.WORKLOADS
    requires_elevation = True

    def __init__(
        self,
        root: Path,
        records: InstallationRecordStore,
        manifests: ManifestStore,
        fetcher: PackageFetcher,
        command: List[str],
        timeout: Optional[float] = None,
    ):
        """
        Initialize the native backend.

        Args:
            root: Installation root holding records and manifests
            records: Installation record store
            manifests: Manifest store
            fetcher: Package fetcher for payload sources
            command: Installer command and any fixed leading arguments
            timeout: Seconds before a single installer call counts as failed
        """
        super().__init__(root, records, manifests, fetcher)
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.timeout = timeout

    def _run_command(self, args: List[str]) -> str:
        """
        Run the installer command.

        Returns:
            The command's stdout

        Raises:
            BackendOperationError: the command is missing, timed out or failed
        """
        cmd = self.command + args
        cmd_str = " ".join(shlex.quote(str(arg)) for arg in cmd)
        logger.debug(f"Running command: {cmd_str}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.error(f"Command timed out after {self.timeout}s: {cmd_str}")
            raise BackendOperationError(
                f"Native installer did not complete: {args[0]}",
                f"timed out after {self.timeout}s",
            ) from e
        except OSError as e:
            logger.error(f"Command could not be started: {cmd_str}")
            raise BackendOperationError(
                f"Native installer {self.command[0]} is not available", str(e)
            ) from e

        if result.returncode != 0:
            logger.error(f"Command failed: {cmd_str}")
            logger.error(f"Return code: {result.returncode}")
            logger.error(f"Stderr: {result.stderr}")
            raise BackendOperationError(
                f"Native installer failed: {args[0]}",
                (result.stderr or "").strip() or f"exit code {result.returncode}",
            )
        return result.stdout or ""

    def install(
        self,
        pkg: ConcretePackage,
        generation: Generation,
        offline_cache: Optional[Path] = None,
    ) -> BackendAction:
        return self.install_batch([pkg], generation, offline_cache)

    def install_batch(
        self,
        pkgs: Iterable[ConcretePackage],
        generation: Generation,
        offline_cache: Optional[Path] = None,
    ) -> BackendAction:
        present = self.installed_payloads()
        sources: List[Tuple[ConcretePackage, Optional[Path]]] = []
        for pkg in sorted(pkgs, key=lambda p: (p.id, p.version)):
            if pkg in present:
                sources.append((pkg, None))
            else:
                sources.append(
                    (pkg, self.fetcher.fetch(pkg.id, pkg.version, offline_cache))
                )
        return _NativeInstall(self, sources, generation).apply()

    def remove_payload(self, pkg: ConcretePackage) -> None:
        self._run_command(["uninstall", "--id", pkg.id, "--version", pkg.version])
        logger.info(f"Removed payload of {pkg}")

    def installed_payloads(self) -> Set[ConcretePackage]:
        stdout = self._run_command(["list", "--json"])
        try:
            data = orjson.loads(stdout or "[]")
        except orjson.JSONDecodeError as e:
            raise BackendOperationError(
                "Native installer returned an unreadable package list", str(e)
            ) from e

        if not isinstance(data, list):
            raise BackendOperationError(
                "Native installer returned a package list that is not an array"
            )
        result: Set[ConcretePackage] = set()
        for entry in data:
            try:
                pack_id, version = entry["id"], str(entry["version"])
            except (KeyError, TypeError) as e:
                raise BackendOperationError(
                    f"Native installer listed an invalid package: {entry!r}", str(e)
                ) from e
            try:
                kind = PackKind(entry.get("kind", PackKind.LIBRARY.value))
            except ValueError:
                kind = PackKind.LIBRARY
            result.add(ConcretePackage(pack_id, version, kind))
        return result
