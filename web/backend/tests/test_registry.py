"""
Tests for the channel registry and configuration models.
"""
import pytest
from pydantic import ValidationError

from srtsync.models import ChannelConfig, EncryptionMode, SavedConfig, ServerConfig, TimecodeSource
from srtsync.services.errors import ChannelNotFoundError
from srtsync.services.registry import ChannelRegistry


class TestChannelRegistry:
    def test_defaults(self):
        registry = ChannelRegistry()
        channels = registry.channels()

        assert len(channels) == 16
        assert channels[0].name == "Channel 1"
        assert channels[0].stream_id == "channel1"
        assert channels[0].srt_port == 9000
        assert channels[15].srt_port == 9015
        assert channels[15].destination_address == "239.255.0.16"
        assert channels[15].destination_port == 5004

    def test_shrink_removes_highest_numbers(self):
        registry = ChannelRegistry()
        kept_ids = [c.id for c in registry.channels()[:8]]

        removed = registry.resize(8)

        assert [c.number for c in removed] == list(range(9, 17))
        assert [c.id for c in registry.channels()] == kept_ids
        assert registry.server.channel_count == 8

    def test_grow_appends_channels(self):
        registry = ChannelRegistry(ServerConfig(channel_count=2))
        registry.resize(4)
        assert [c.number for c in registry.channels()] == [1, 2, 3, 4]
        assert registry.get_by_number(4).srt_port == 9003

    def test_removing_reference_clears_pointer(self):
        registry = ChannelRegistry(ServerConfig(channel_count=4))
        registry.set_reference(registry.get_by_number(4).id)
        registry.resize(3)
        assert registry.reference_channel_id is None

    def test_reassign_ports_keeps_custom(self):
        registry = ChannelRegistry(ServerConfig(channel_count=2))
        custom = registry.get_by_number(2)
        custom.srt_port = 7000
        custom.custom_port = True

        registry.server.srt_port = 10000
        registry.reassign_ports()

        assert registry.get_by_number(1).srt_port == 10000
        assert custom.srt_port == 7000

    def test_get_unknown(self):
        registry = ChannelRegistry()
        with pytest.raises(ChannelNotFoundError):
            registry.get("missing")
        assert registry.find("missing") is None

    def test_channel_config_round_trip(self):
        registry = ChannelRegistry(ServerConfig(channel_count=2))
        registry.apply_channel_config(ChannelConfig(
            number=2, name="Studio", stream_id="studio", srt_port=8000,
            timecode_source=TimecodeSource.AUDIO
        ))

        exported = registry.export_channel_configs()[1]
        assert exported.name == "Studio"
        assert exported.srt_port == 8000
        assert exported.timecode_source == TimecodeSource.AUDIO
        assert registry.export_channel_configs()[0].srt_port is None


class TestServerConfigValidation:
    def test_port_range_overflow(self):
        with pytest.raises(ValidationError):
            ServerConfig(srt_port=65530, channel_count=16)

    @pytest.mark.parametrize("passphrase", ["", "short", "x" * 80])
    def test_passphrase_length(self, passphrase):
        with pytest.raises(ValidationError):
            ServerConfig(encryption=EncryptionMode.AES_128, passphrase=passphrase)

    def test_valid_encryption(self):
        config = ServerConfig(encryption=EncryptionMode.AES_192, passphrase="0123456789")
        assert config.encryption == EncryptionMode.AES_192

    def test_saved_config_rejects_duplicate_numbers(self):
        with pytest.raises(ValidationError):
            SavedConfig(
                server=ServerConfig(),
                channels=[ChannelConfig(number=1, name="a"), ChannelConfig(number=1, name="b")]
            )
