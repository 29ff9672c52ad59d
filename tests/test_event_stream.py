import asyncio
import signal

import pytest

from conftest import VM_A
from core.errors import VmEventStreamError, VmNotSupportedError
from core.event_stream import VmadmEventStream

READY = '{"type": "ready", "date": "2026-05-01T12:00:00.000Z"}'
STATE = '{"type": "state", "date": "2026-05-01T12:00:01.000Z", "zonename": "%s", "state": "running"}' % VM_A


async def next_event(stream, timeout=5):
    return await asyncio.wait_for(stream.__anext__(), timeout)


@pytest.mark.asyncio
async def test_ready_then_events(vmadm_script, tmp_path):
    path = vmadm_script(
        f'printf "%s\\n" "$@" > {tmp_path}/args\n'
        f'echo "$VMADM_IDENT" > {tmp_path}/ident\n'
        f"echo '{READY}'\necho '{STATE}'\nexec sleep 5"
    )
    stream = VmadmEventStream(vm_uuid=VM_A, name="test-ident", vmadm_path=path)
    await stream.start()

    ready = await asyncio.wait_for(stream.ready(), 5)
    assert ready.type == "ready"

    event = await next_event(stream)
    assert event.type == "state"
    assert event.model_dump()["zonename"] == VM_A

    stream.stop()
    await stream.wait_closed()
    assert stream.proc.returncode == -signal.SIGTERM
    assert (tmp_path / "args").read_text().splitlines() == ["events", "-rj", VM_A]
    assert (tmp_path / "ident").read_text().strip() == "test-ident"


@pytest.mark.asyncio
async def test_second_ready_is_ignored(vmadm_script):
    path = vmadm_script(f"echo '{READY}'\necho '{READY}'\necho '{STATE}'\nexec sleep 5")
    stream = VmadmEventStream(vmadm_path=path)
    await stream.start()
    await stream.ready()

    assert (await next_event(stream)).type == "state"
    stream.stop()
    await stream.wait_closed()


@pytest.mark.asyncio
async def test_malformed_line_aborts_child(vmadm_script):
    path = vmadm_script(f"echo '{READY}'\necho 'this is not json'\nexec sleep 5")
    stream = VmadmEventStream(vmadm_path=path)
    await stream.start()
    await stream.ready()

    with pytest.raises(VmEventStreamError, match="aborted"):
        await next_event(stream)

    await stream.wait_closed()
    assert stream.proc.returncode == -signal.SIGABRT


@pytest.mark.asyncio
async def test_numeric_date_aborts_child(vmadm_script):
    path = vmadm_script(f"echo '{READY}'\necho '{{\"type\": \"state\", \"date\": 12345}}'\nexec sleep 5")
    stream = VmadmEventStream(vmadm_path=path)
    await stream.start()
    await stream.ready()

    with pytest.raises(VmEventStreamError, match="aborted"):
        await next_event(stream)

    await stream.wait_closed()
    assert stream.proc.returncode == -signal.SIGABRT


@pytest.mark.asyncio
async def test_stop_after_ready_ends_iteration(vmadm_script):
    stream = VmadmEventStream(vmadm_path=vmadm_script(f"echo '{READY}'\nexec sleep 5"))
    await stream.start()
    await stream.ready()

    stream.stop()
    await stream.wait_closed()

    with pytest.raises(StopAsyncIteration):
        await next_event(stream)
    assert stream.proc.returncode == -signal.SIGTERM


@pytest.mark.asyncio
async def test_stderr_output_aborts_child(vmadm_script):
    path = vmadm_script(f"echo '{READY}'\nsleep 0.2\necho 'unexpected' >&2\nexec sleep 5")
    stream = VmadmEventStream(vmadm_path=path)
    await stream.start()
    await stream.ready()

    with pytest.raises(VmEventStreamError):
        await next_event(stream)
    await stream.wait_closed()


@pytest.mark.asyncio
async def test_unexpected_exit(vmadm_script):
    stream = VmadmEventStream(vmadm_path=vmadm_script(f"echo '{READY}'\nexit 0"))
    await stream.start()
    await stream.ready()

    with pytest.raises(VmEventStreamError, match="child exited"):
        await next_event(stream)
    with pytest.raises(StopAsyncIteration):
        await next_event(stream)
    await stream.wait_closed()


@pytest.mark.asyncio
async def test_events_subcommand_missing(vmadm_script):
    stream = VmadmEventStream(vmadm_path=vmadm_script("echo 'Invalid command: \"events\".' >&2\nexit 1"))
    await stream.start()

    with pytest.raises(VmNotSupportedError):
        await asyncio.wait_for(stream.ready(), 5)
    await stream.wait_closed()
    assert stream.stopped


@pytest.mark.asyncio
async def test_stop_before_ready(vmadm_script):
    stream = VmadmEventStream(vmadm_path=vmadm_script("exec sleep 5"))
    await stream.start()
    stream.stop()
    stream.stop()

    with pytest.raises(VmEventStreamError):
        await stream.ready()
    await stream.wait_closed()
    assert stream.proc.returncode == -signal.SIGTERM
