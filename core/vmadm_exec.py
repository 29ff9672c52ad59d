import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from config.settings import VMADM_PATH, ZONES_CONFIG_DIR
from core.errors import VmBackendError, VmNotFoundError, VmNotRunningError
from core.logger import TRACE, log_event

ERR_NOT_FOUND = "VmNotFound"
ERR_NOT_RUNNING = "ENOTRUNNING"

_LOOKUP_EMPTY_RE = re.compile(r"^Requested unique lookup but found 0 results.")
_NO_SUCH_ZONE_RE = re.compile(r"No such zone configured")
_NOT_RUNNING_RE = re.compile(r"Cannot find running init PID for VM")

DNI_MARKER_RE = re.compile(r'<attr name="do-not-inventory" type="string" value="true"/>')


@dataclass
class ExecResult:
    """
    Outcome of one vmadm run. `code` is None when the child was killed by a
    signal, in which case `signal` holds the signal number.
    """

    code: Optional[int]
    signal: Optional[int]
    err_code: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.code != 0 or self.signal is not None


def classify(stderr_lines: List[str]) -> Tuple[Optional[str], int]:
    """
    Look at the last stderr line of a failed run only.

    Returns (err_code, log level). A missing VM is an expected outcome of
    racing a load against a delete, so it is only logged when tracing.
    """
    if not stderr_lines:
        return None, logging.ERROR

    last_line = stderr_lines[-1]
    if _LOOKUP_EMPTY_RE.match(last_line):
        return ERR_NOT_FOUND, TRACE
    if _NO_SUCH_ZONE_RE.search(last_line):
        return ERR_NOT_FOUND, TRACE
    if _NOT_RUNNING_RE.search(last_line):
        return ERR_NOT_RUNNING, logging.ERROR
    return None, logging.ERROR


async def _read_stderr_lines(stream: asyncio.StreamReader, lines: List[str]) -> str:
    """
    Split stderr into lines as chunks arrive. Returns the unterminated tail.
    """
    buffer = ""
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return buffer
        buffer += chunk.decode("utf-8", errors="replace")
        *complete, buffer = buffer.split("\n")
        lines.extend(complete)


async def execute(
    args: List[str],
    stdin_data: Optional[str] = None,
    req_id: Optional[str] = None,
    vmadm_path: str = VMADM_PATH,
) -> Tuple[ExecResult, str, List[str]]:
    """
    Run vmadm with `args` and wait for it to exit.

    Returns (result, stdout, stderr_lines). Failures are classified and
    logged here but not raised; see `raise_for_result`.
    """
    env = os.environ.copy()
    if req_id:
        log_event(f'[vmadm] setting req_id to "{req_id}"')
        env["REQ_ID"] = req_id
    env["VMADM_DEBUG_LEVEL"] = "debug"

    cmdline = [vmadm_path] + list(args)
    log_event(f"[vmadm] executing {' '.join(cmdline)}", TRACE)

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmdline,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except FileNotFoundError as e:
        msg = f"vmadm not found at {vmadm_path}: {e}"
        log_event(f"[vmadm] {msg}", logging.ERROR)
        raise VmBackendError(msg) from e

    stderr_lines: List[str] = []

    async def feed_stdin() -> None:
        if stdin_data:
            proc.stdin.write(stdin_data.encode("utf-8"))
            try:
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                # child exited without reading its input; exit status says why
                pass
        proc.stdin.close()

    _, stdout_bytes, stderr_tail = await asyncio.gather(
        feed_stdin(),
        proc.stdout.read(),
        _read_stderr_lines(proc.stderr, stderr_lines),
    )
    returncode = await proc.wait()

    stdout = stdout_bytes.decode("utf-8", errors="replace")
    if stderr_tail:
        log_event(f"[vmadm] stderr from vmadm: {stderr_tail}")
        stderr_lines.append(stderr_tail)

    if returncode < 0:
        result = ExecResult(code=None, signal=-returncode)
    else:
        result = ExecResult(code=returncode, signal=None)

    if result.failed:
        result.err_code, level = classify(stderr_lines)
        log_event(
            f"[vmadm] error executing vmadm: code={result.code} "
            f"err_code={result.err_code} signal={result.signal} "
            f"cmdline={cmdline} stdout={stdout!r} stderr_lines={stderr_lines!r}",
            level,
        )
    else:
        log_event(f"[vmadm] vmadm child closed with ({result.code}, {result.signal})", TRACE)

    return result, stdout, stderr_lines


def raise_for_result(
    result: ExecResult,
    stderr_lines: List[str],
    vm_uuid: Optional[str] = None,
    command: str = "vmadm",
) -> None:
    """
    Turn a failed run into the matching typed error. No-op on success.
    """
    if not result.failed:
        return

    stderr = "\n".join(stderr_lines)
    if result.err_code == ERR_NOT_FOUND:
        what = f"{command} {vm_uuid}" if vm_uuid else command
        # tooling depends on this matching ': No such zone'
        raise VmNotFoundError(f"{what} failed: No such zone")
    if result.err_code == ERR_NOT_RUNNING:
        raise VmNotRunningError(f"VM {vm_uuid} is not running")

    raise VmBackendError(
        f"vmadm exited with code: {result.code} signal: {result.signal} -- {stderr}",
        code=result.code,
        signal=result.signal,
        stderr=stderr,
    )


# ----------------------------------------------------------------------
# Existence probe
# ----------------------------------------------------------------------
def zone_config_path(vm_uuid: str, config_dir: Path = ZONES_CONFIG_DIR) -> Path:
    return Path(config_dir) / f"{vm_uuid}.xml"


async def probe_zone(vm_uuid: str, config_dir: Path = ZONES_CONFIG_DIR) -> Optional[bool]:
    """
    Read the zone's XML config directly instead of spawning vmadm.

    Returns None when the VM does not exist, otherwise whether it is marked
    do-not-inventory. Read errors other than a missing file propagate as-is.
    """
    filename = zone_config_path(vm_uuid, config_dir)
    try:
        data = await asyncio.to_thread(filename.read_text, encoding="utf-8", errors="replace")
    except FileNotFoundError:
        log_event(f"[vmadm] probe: {filename} does not exist", TRACE)
        return None

    hidden = bool(DNI_MARKER_RE.search(data))
    log_event(f"[vmadm] probe: {filename} exists (do_not_inventory={hidden})", TRACE)
    return hidden
