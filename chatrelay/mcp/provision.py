"""
One-time dependency provisioning for process-backed tool providers.

A descriptor like `python3 -m mcp_server_time` needs the `mcp_server_time` package
installed before it can be spawned. Installing packages named by caller input is a
cost/security hazard, so provisioning is restricted to an explicit allow-list and is
disabled when the list is empty.

Env:
- MCP_PROVISION_ALLOWLIST: comma-separated package names (default: empty = disabled)
- MCP_PROVISION_PIP: installer executable (default: pip3)
- MCP_PROVISION_TIMEOUT_SECONDS: bound on one install (default: 120)
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence, Set

from chatrelay.mcp.types import ProcessDescriptor

logger = logging.getLogger(__name__)

# PEP 508 distribution name.
_PACKAGE_NAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9._-]*[A-Za-z0-9])?$")


def _split_csv(raw: str) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


def _normalize(name: str) -> str:
    return re.sub(r"[-_.]+", "-", (name or "").strip()).lower()


@dataclass(frozen=True)
class ProvisionPolicy:
    allowlist: FrozenSet[str]
    pip_command: str = "pip3"
    timeout_seconds: float = 120.0

    @property
    def enabled(self) -> bool:
        return bool(self.allowlist)

    def allows(self, package: str) -> bool:
        return _normalize(package) in self.allowlist


def load_provision_policy() -> ProvisionPolicy:
    raw_timeout = (os.getenv("MCP_PROVISION_TIMEOUT_SECONDS") or "").strip()
    try:
        timeout = float(raw_timeout) if raw_timeout else 120.0
    except Exception:
        timeout = 120.0
    timeout = max(1.0, min(timeout, 900.0))
    return ProvisionPolicy(
        allowlist=frozenset(_normalize(x) for x in _split_csv(os.getenv("MCP_PROVISION_ALLOWLIST", ""))),
        pip_command=(os.getenv("MCP_PROVISION_PIP") or "").strip() or "pip3",
        timeout_seconds=timeout,
    )


def package_to_provision(descriptor: ProcessDescriptor) -> Optional[str]:
    """
    Return the package a Python-module launch depends on, or None.

    Recognizes `python*` interpreters launched with `-m <package>`; the module's top-level
    name is used as the package name.
    """
    exe = os.path.basename(descriptor.command or "").lower()
    if not exe.startswith("python"):
        return None
    args: Sequence[str] = descriptor.args
    try:
        idx = list(args).index("-m")
    except ValueError:
        return None
    if idx + 1 >= len(args):
        return None
    module = str(args[idx + 1] or "").strip()
    pkg = module.split(".")[0]
    if not _PACKAGE_NAME_RE.match(pkg):
        return None
    return pkg


_installed: Set[str] = set()
_install_locks: Dict[str, asyncio.Lock] = {}


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass


async def _run_install(pkg: str, policy: ProvisionPolicy) -> bool:
    proc = await asyncio.create_subprocess_exec(
        policy.pip_command,
        "install",
        pkg,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    finished = False
    try:
        _out, err = await asyncio.wait_for(proc.communicate(), timeout=policy.timeout_seconds)
        finished = True
    except asyncio.TimeoutError:
        logger.error("Provisioning %s timed out after %.0fs", pkg, policy.timeout_seconds)
        return False
    finally:
        # Timed out or cancelled: the installer must not outlive the request.
        if not finished:
            _kill(proc)
            await asyncio.shield(proc.wait())
    if proc.returncode != 0:
        tail = (err or b"").decode("utf-8", errors="replace").strip().splitlines()[-3:]
        logger.error("Failed to install python package %s (exit %s): %s", pkg, proc.returncode, " | ".join(tail))
        return False
    return True


async def ensure_provisioned(descriptor: ProcessDescriptor, policy: Optional[ProvisionPolicy] = None) -> Optional[bool]:
    """
    Provision the descriptor's package when it is allow-listed.

    Returns None when no provisioning applies, otherwise whether the package is available.
    Never raises for install failures; the spawn attempt proceeds either way.
    """
    pkg = package_to_provision(descriptor)
    if pkg is None:
        return None
    policy = policy or load_provision_policy()
    if not policy.enabled:
        return None
    if not policy.allows(pkg):
        logger.info("Skipping provisioning for %s: not in MCP_PROVISION_ALLOWLIST", pkg)
        return None

    key = _normalize(pkg)
    if key in _installed:
        return True
    lock = _install_locks.setdefault(key, asyncio.Lock())
    async with lock:
        if key in _installed:
            return True
        logger.info("Installing python package %s", pkg)
        try:
            ok = await _run_install(pkg, policy)
        except OSError as e:
            logger.error("Provisioning %s could not start installer %s: %s", pkg, policy.pip_command, e)
            ok = False
        if ok:
            _installed.add(key)
            logger.info("Installed python package %s", pkg)
        return ok
