"""
Tests for the channel supervisor: lifecycle, restart policy, forced cycles
and configuration apply.
"""
import asyncio
import signal

import pytest

from srtsync.models import (
    ChannelStatus, EncryptionMode, PartialChannelConfig, PartialServerConfig, RecordingFormat
)
from srtsync.services import events as event_kinds
from srtsync.services.errors import (
    ChannelNotFoundError, ChannelStateError, ConfigApplyError, SpawnError
)

from conftest import channel, settle, wait_until

ESTABLISHED = "Input #0, mpegts, from 'srt://0.0.0.0:9000?mode=listener':\n"
LISTENING = "Opening 'srt://0.0.0.0:9000?mode=listener' for reading\n"


def ingest(spawner):
    return [p for p in spawner.processes if any(part.startswith("srt://") for part in p.cmd)]


def assert_stopped_baseline(ch):
    assert ch.status == ChannelStatus.STOPPED
    assert ch.pid is None
    assert ch.connected_clients == 0
    assert ch.bytes_received == 0
    assert ch.bytes_sent == 0
    assert ch.bitrate == 0
    assert not ch.is_recording


async def start_receiving(server, spawner, number=1):
    ch = channel(server, number)
    await server.channels.start_channel(ch.id)
    process = spawner.for_port(ch.srt_port)[-1]
    process.feed(LISTENING + ESTABLISHED)
    await wait_until(lambda: ch.status == ChannelStatus.RECEIVING)
    return ch, process


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start_builds_listener_command(self, server, spawner):
        ch = channel(server, 2)
        await server.channels.start_channel(ch.id)

        cmd = spawner.processes[0].cmd
        assert "srt://0.0.0.0:9001?mode=listener&latency=200000&streamid=channel2" in cmd
        assert cmd[-1] == "udp://239.255.0.2:5004?pkt_size=1316"
        assert ch.status == ChannelStatus.STARTING
        assert ch.pid == spawner.processes[0].pid

    @pytest.mark.asyncio
    async def test_encryption_parameters(self, server, spawner):
        await server.channels.update_server_config(
            PartialServerConfig(encryption=EncryptionMode.AES_256, passphrase="correct horse battery")
        )
        await server.channels.start_channel(channel(server, 1).id)

        srt_input = next(part for part in spawner.processes[0].cmd if part.startswith("srt://"))
        assert "passphrase=correct+horse+battery" in srt_input
        assert "pbkeylen=32" in srt_input

    @pytest.mark.asyncio
    async def test_no_destination_writes_to_stdout(self, server, spawner):
        ch = channel(server, 1)
        ch.destination_address = ""
        await server.channels.start_channel(ch.id)
        process = spawner.processes[0]
        assert process.cmd[-1] == "pipe:1"

        process.feed(ESTABLISHED)
        await wait_until(lambda: ch.status == ChannelStatus.RECEIVING)
        process.feed_stdout(b"\x47" * 1880)
        await wait_until(lambda: ch.bytes_received == 1880)
        assert ch.bytes_sent == 1880

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, server, spawner):
        ch = channel(server, 1)
        await server.channels.start_channel(ch.id)
        await server.channels.start_channel(ch.id)

        assert len(spawner.processes) == 1
        starting_logs = [e for e in server.log.entries() if "starting on SRT port" in e.message]
        assert len(starting_logs) == 1

    @pytest.mark.asyncio
    async def test_start_unknown_channel(self, server):
        with pytest.raises(ChannelNotFoundError):
            await server.channels.start_channel("missing")

    @pytest.mark.asyncio
    async def test_spawn_failure_sets_error(self, server, spawner):
        spawner.fail = True
        ch = channel(server, 1)

        with pytest.raises(SpawnError):
            await server.channels.start_channel(ch.id)

        assert ch.status == ChannelStatus.ERROR
        assert not server.channels.is_running(ch.id)
        assert server.log.entries()[0].level.value == "error"

    @pytest.mark.asyncio
    async def test_telemetry_drives_status(self, server, spawner, events):
        ch = channel(server, 1)
        await server.channels.start_channel(ch.id)
        process = spawner.processes[0]

        process.feed(LISTENING)
        await wait_until(lambda: ch.status == ChannelStatus.WAITING)

        process.feed(ESTABLISHED + "size=   128kB time=00:00:01.00 bitrate=2500.0kbits/s fps=25\n")
        await wait_until(lambda: ch.status == ChannelStatus.RECEIVING)

        assert ch.connected_clients == 1
        assert ch.bytes_received == 131072
        assert ch.bitrate == 2500
        assert any(kind == event_kinds.CHANNELS for kind, _ in events)

    @pytest.mark.asyncio
    async def test_stop_resets_to_baseline(self, server, spawner):
        ch, process = await start_receiving(server, spawner)
        process.feed("size=   64kB bitrate=1000kbits/s\n")
        await wait_until(lambda: ch.bytes_received > 0)

        await server.channels.stop_channel(ch.id)

        assert signal.SIGTERM in process.signals
        assert not server.channels.is_running(ch.id)
        assert_stopped_baseline(ch)

    @pytest.mark.asyncio
    async def test_stop_without_process_still_resets(self, server):
        ch = channel(server, 1)
        ch.status = ChannelStatus.ERROR
        ch.bytes_received = 99

        await server.channels.stop_channel(ch.id)

        assert_stopped_baseline(ch)

    @pytest.mark.asyncio
    async def test_stop_keeps_reference_flag(self, server, spawner):
        ch, _ = await start_receiving(server, spawner)
        server.sync.set_reference_channel(ch.id)

        await server.channels.stop_channel(ch.id)

        assert ch.is_reference

    @pytest.mark.asyncio
    async def test_start_all_and_stop_all(self, server, spawner):
        started = await server.channels.start_all()
        assert started == [1, 2, 3, 4]
        assert len(spawner.processes) == 4

        stopped = await server.channels.stop_all()
        assert stopped == [1, 2, 3, 4]
        for ch in server.registry.channels():
            assert_stopped_baseline(ch)


class TestRestartPolicy:
    @pytest.mark.asyncio
    async def test_unexpected_exit_restarts(self, server, spawner):
        ch, process = await start_receiving(server, spawner)

        process.exit(1)
        await wait_until(lambda: ch.status == ChannelStatus.WAITING and not server.channels.is_running(ch.id))
        assert ch.connected_clients == 0

        await wait_until(lambda: len(ingest(spawner)) == 2)
        assert ch.status == ChannelStatus.STARTING
        assert server.channels.is_running(ch.id)
        assert any("exited with code 1" in e.message for e in server.log.entries())

    @pytest.mark.asyncio
    async def test_byte_counter_survives_restart(self, server, spawner):
        ch, process = await start_receiving(server, spawner)
        process.feed("size=   100kB\n")
        await wait_until(lambda: ch.bytes_received == 102400)

        process.exit(1)
        await wait_until(lambda: len(ingest(spawner)) == 2)
        replacement = ingest(spawner)[-1]
        replacement.feed(ESTABLISHED + "size=   1kB\n")
        await wait_until(lambda: ch.bytes_received == 102400 + 1024)

    @pytest.mark.asyncio
    async def test_stop_then_exit_does_not_restart(self, server, spawner):
        ch, process = await start_receiving(server, spawner)

        await server.channels.stop_channel(ch.id)
        process.exit(0)
        await settle()
        await asyncio.sleep(server.channels.restart_delay * 2)

        assert len(ingest(spawner)) == 1
        assert ch.status == ChannelStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_restart(self, server, spawner):
        ch, process = await start_receiving(server, spawner)
        server.channels.restart_delay = 0.2

        process.exit(1)
        await wait_until(lambda: ch.status == ChannelStatus.WAITING)
        await server.channels.stop_channel(ch.id)
        await asyncio.sleep(0.3)

        assert len(ingest(spawner)) == 1
        assert ch.status == ChannelStatus.STOPPED

    @pytest.mark.asyncio
    async def test_exit_while_starting_is_error(self, server, spawner):
        ch = channel(server, 1)
        await server.channels.start_channel(ch.id)

        spawner.processes[0].exit(1)
        await wait_until(lambda: ch.status == ChannelStatus.ERROR)

        await settle()
        assert len(ingest(spawner)) == 1

    @pytest.mark.asyncio
    async def test_failed_restart_not_retried(self, server, spawner):
        ch, process = await start_receiving(server, spawner)
        spawner.fail = True

        process.exit(1)
        await wait_until(
            lambda: any("waiting for operator" in e.message for e in server.log.entries())
        )

        assert ch.status == ChannelStatus.ERROR
        assert len(ingest(spawner)) == 1


class TestForcedCycles:
    @pytest.mark.asyncio
    async def test_disconnect_requires_receiving(self, server):
        with pytest.raises(ChannelStateError):
            await server.channels.disconnect_channel(channel(server, 1).id)

    @pytest.mark.asyncio
    async def test_disconnect_cycles_engine(self, server, spawner):
        ch, process = await start_receiving(server, spawner)

        await server.channels.disconnect_channel(ch.id)
        assert signal.SIGTERM in process.signals
        assert ch.status == ChannelStatus.STOPPED

        await wait_until(lambda: len(ingest(spawner)) == 2)
        assert ch.status == ChannelStatus.STARTING

    @pytest.mark.asyncio
    async def test_reset_buffer_resumes_recording(self, server, spawner):
        server.channels.resume_delay = 0.2
        ch, _ = await start_receiving(server, spawner)
        await server.recordings.start_recording(ch.id, RecordingFormat.MKV)

        await server.channels.reset_buffer(ch.id)
        assert not ch.is_recording

        await wait_until(lambda: len(ingest(spawner)) == 2)
        ingest(spawner)[-1].feed(ESTABLISHED)
        await wait_until(lambda: ch.is_recording)
        assert ch.recording_format == RecordingFormat.MKV

    @pytest.mark.asyncio
    async def test_resume_survives_restart_during_resume_delay(self, server, spawner):
        server.channels.resume_delay = 0.3
        ch, _ = await start_receiving(server, spawner)
        await server.recordings.start_recording(ch.id, RecordingFormat.MKV)

        await server.channels.reset_buffer(ch.id)
        await wait_until(lambda: len(ingest(spawner)) == 2)
        replacement = ingest(spawner)[-1]
        replacement.feed(LISTENING + ESTABLISHED)
        await wait_until(lambda: ch.status == ChannelStatus.RECEIVING)

        # Engine dies before the recording is resumed
        replacement.exit(1)
        await wait_until(lambda: len(ingest(spawner)) == 3)
        ingest(spawner)[-1].feed(ESTABLISHED)

        await wait_until(lambda: ch.is_recording, timeout=2.0)
        assert ch.recording_format == RecordingFormat.MKV

    @pytest.mark.asyncio
    async def test_reset_buffer_resume_failure_is_warning(self, server, spawner):
        ch, _ = await start_receiving(server, spawner)
        await server.recordings.start_recording(ch.id)

        await server.channels.reset_buffer(ch.id)
        # Replacement engine never reports a connection, so resume must fail
        await wait_until(
            lambda: any("Could not resume recording" in e.message for e in server.log.entries())
        )
        assert not ch.is_recording


class TestConfigurationApply:
    @pytest.mark.asyncio
    async def test_update_channel_restarts_active_channel(self, server, spawner):
        ch, process = await start_receiving(server, spawner)

        await server.channels.update_channel(ch.id, PartialChannelConfig(name="Camera 1", srt_port=9500))

        assert signal.SIGTERM in process.signals
        assert ch.name == "Camera 1"
        assert ch.custom_port
        assert len(spawner.for_port(9500)) == 1
        assert ch.status == ChannelStatus.STARTING

    @pytest.mark.asyncio
    async def test_update_idle_channel_does_not_start(self, server, spawner):
        ch = channel(server, 1)
        await server.channels.update_channel(ch.id, PartialChannelConfig(destination_address="10.0.0.9"))

        assert ch.destination_address == "10.0.0.9"
        assert spawner.processes == []

    @pytest.mark.asyncio
    async def test_shrink_channel_count_only_stops_removed(self, server, spawner):
        await server.channels.set_channel_count(16)
        await server.channels.start_all()
        survivors = {c.id: server.channels.get_process_info(c.id)["pid"] for c in server.registry.channels()[:8]}
        removed = [p for c in server.registry.channels()[8:] for p in spawner.for_port(c.srt_port)]

        await server.channels.set_channel_count(8)

        assert [c.number for c in server.registry.channels()] == list(range(1, 9))
        for process in removed:
            assert signal.SIGTERM in process.signals
        for channel_id, pid in survivors.items():
            assert server.channels.get_process_info(channel_id)["pid"] == pid
        assert len(spawner.processes) == 16
        assert server.registry.server.channel_count == 8

    @pytest.mark.asyncio
    async def test_channel_count_validation(self, server):
        with pytest.raises(ConfigApplyError):
            await server.channels.set_channel_count(0)

    @pytest.mark.asyncio
    async def test_port_change_restarts_running_channels(self, server, spawner):
        first = channel(server, 1)
        await server.channels.start_channel(first.id)

        await server.channels.update_server_config(PartialServerConfig(srt_port=10000))

        assert [c.srt_port for c in server.registry.channels()] == [10000, 10001, 10002, 10003]
        assert len(spawner.for_port(10000)) == 1
        assert spawner.for_port(10001) == []
        assert first.status == ChannelStatus.STARTING

    @pytest.mark.asyncio
    async def test_server_change_keeps_channel_awaiting_restart(self, server, spawner):
        server.channels.restart_delay = 5.0
        ch, process = await start_receiving(server, spawner)
        process.exit(1)
        await wait_until(lambda: ch.status == ChannelStatus.WAITING and not server.channels.is_running(ch.id))

        await server.channels.update_server_config(PartialServerConfig(latency=300))

        assert len(ingest(spawner)) == 2
        assert any("latency=300000" in part for part in ingest(spawner)[-1].cmd)
        assert server.channels.is_running(ch.id)
        assert channel(server, 1).status == ChannelStatus.STARTING

    @pytest.mark.asyncio
    async def test_display_only_change_keeps_channels_running(self, server, spawner, events):
        ch, process = await start_receiving(server, spawner)

        await server.channels.update_server_config(PartialServerConfig(public_address="203.0.113.7"))

        assert process.signals == []
        assert ch.status == ChannelStatus.RECEIVING
        assert server.registry.server.public_address == "203.0.113.7"
        assert any(kind == event_kinds.SERVER_CONFIG for kind, _ in events)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("update", [
        PartialServerConfig(encryption=EncryptionMode.AES_128, passphrase="short"),
        PartialServerConfig(srt_port=65534),
        PartialServerConfig(latency=-1),
    ])
    async def test_invalid_server_config_rejected(self, server, update):
        before = server.registry.server.model_copy()

        with pytest.raises(ConfigApplyError):
            await server.channels.update_server_config(update)

        assert server.registry.server == before


class TestSavedConfigs:
    @pytest.mark.asyncio
    async def test_save_and_load(self, server, spawner):
        ch = channel(server, 2)
        await server.channels.update_channel(ch.id, PartialChannelConfig(name="Studio B", latency=500))
        server.channels.save_config("studio")

        await server.channels.update_channel(ch.id, PartialChannelConfig(name="Changed"))
        await server.channels.set_channel_count(2)
        await server.channels.load_config("studio")

        assert len(server.registry) == 4
        assert channel(server, 2).name == "Studio B"
        assert channel(server, 2).latency == 500
        assert "studio" in server.channels.list_configs()

    @pytest.mark.asyncio
    async def test_load_restarts_running_channels(self, server, spawner):
        server.channels.save_config("base")
        await server.channels.start_channel(channel(server, 1).id)

        await server.channels.load_config("base")

        assert len(ingest(spawner)) == 2
        assert channel(server, 1).status == ChannelStatus.STARTING

    @pytest.mark.asyncio
    async def test_load_keeps_channel_awaiting_restart(self, server, spawner):
        server.channels.save_config("base")
        server.channels.restart_delay = 5.0
        ch, process = await start_receiving(server, spawner)
        process.exit(1)
        await wait_until(lambda: ch.status == ChannelStatus.WAITING and not server.channels.is_running(ch.id))

        await server.channels.load_config("base")

        assert len(ingest(spawner)) == 2
        assert channel(server, 1).status == ChannelStatus.STARTING

    @pytest.mark.asyncio
    async def test_load_missing_config(self, server):
        with pytest.raises(ConfigApplyError):
            await server.channels.load_config("nope")

    @pytest.mark.asyncio
    async def test_load_invalid_config_leaves_state(self, server, tmp_path):
        server.store.save("broken", {"server": {"srt_port": 1}, "channels": []})
        names = [c.name for c in server.registry.channels()]

        with pytest.raises(ConfigApplyError):
            await server.channels.load_config("broken")

        assert [c.name for c in server.registry.channels()] == names
