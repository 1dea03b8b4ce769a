"""Unit tests for the walstream CLI."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from typer.testing import CliRunner

from walstream.cli import app
from walstream.wal.errors import ReceiveError, SlotCreationError
from walstream.wal.slot_manager import SlotInfo

DEMO_CONFIG = Path(__file__).resolve().parents[2] / "examples" / "demo-config.yaml"

runner = CliRunner()


class TestValidate:
    def test_valid_config(self):
        result = runner.invoke(app, ["validate", str(DEMO_CONFIG)])
        assert result.exit_code == 0
        assert "Valid" in result.output
        assert "demo_<random>" in result.output

    def test_missing_config(self, tmp_path: Path):
        result = runner.invoke(app, ["validate", str(tmp_path / "absent.yaml")])
        assert result.exit_code == 1

    def test_invalid_config(self, tmp_path: Path):
        path = tmp_path / "engine.yaml"
        path.write_text("slot:\n  create: false\n")
        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestRun:
    def _reader_raising(self, exc: Exception) -> MagicMock:
        reader = MagicMock()
        reader.run = AsyncMock(side_effect=exc)
        return MagicMock(return_value=reader)

    def test_clean_stop(self):
        reader = MagicMock()
        reader.run = AsyncMock(return_value=None)
        with patch("walstream.cli.WalReader", MagicMock(return_value=reader)):
            result = runner.invoke(app, ["run", str(DEMO_CONFIG)])
        assert result.exit_code == 0
        reader.run.assert_awaited_once()

    def test_startup_failure_exits_non_zero(self):
        factory = self._reader_raising(SlotCreationError("permission denied"))
        with patch("walstream.cli.WalReader", factory):
            result = runner.invoke(app, ["run", str(DEMO_CONFIG)])
        assert result.exit_code == 1
        assert "Startup failed" in result.output

    def test_fatal_receive_error_exits_non_zero(self):
        factory = self._reader_raising(ReceiveError.fatal("terminating connection"))
        with patch("walstream.cli.WalReader", factory):
            result = runner.invoke(app, ["run", str(DEMO_CONFIG)])
        assert result.exit_code == 1
        assert "session lost" in result.output

    def test_json_format_uses_json_sink(self):
        from walstream.dispatch.sinks import JsonLinesSink

        reader = MagicMock()
        reader.run = AsyncMock(return_value=None)
        factory = MagicMock(return_value=reader)
        with patch("walstream.cli.WalReader", factory):
            result = runner.invoke(app, ["run", str(DEMO_CONFIG), "--format", "json"])
        assert result.exit_code == 0
        assert isinstance(factory.call_args.args[1], JsonLinesSink)


class TestSlots:
    def test_lists_slots(self):
        rows = [SlotInfo("demo_abc", "wal2json", "walstream_demo", False, 0x16B3748)]
        with patch(
            "walstream.cli.SlotManager.list_slots", AsyncMock(return_value=rows)
        ) as list_slots:
            result = runner.invoke(app, ["slots", str(DEMO_CONFIG)])
        assert result.exit_code == 0
        assert "demo_abc" in result.output
        list_slots.assert_awaited_once_with("demo_")

    def test_all_flag_drops_prefix_filter(self):
        with patch(
            "walstream.cli.SlotManager.list_slots", AsyncMock(return_value=[])
        ) as list_slots:
            result = runner.invoke(app, ["slots", str(DEMO_CONFIG), "--all"])
        assert result.exit_code == 0
        list_slots.assert_awaited_once_with(None)


class TestDropSlot:
    def test_drop_with_yes(self):
        with patch(
            "walstream.cli.SlotManager.drop_slot", AsyncMock(return_value=True)
        ) as drop:
            result = runner.invoke(app, ["drop-slot", "demo_abc", "--yes"])
        assert result.exit_code == 0
        drop.assert_awaited_once_with("demo_abc")

    def test_drop_failure(self):
        with patch("walstream.cli.SlotManager.drop_slot", AsyncMock(return_value=False)):
            result = runner.invoke(app, ["drop-slot", "demo_abc", "-y"])
        assert result.exit_code == 1

    def test_declined_confirmation(self):
        with patch("walstream.cli.SlotManager.drop_slot", AsyncMock()) as drop:
            result = runner.invoke(app, ["drop-slot", "demo_abc"], input="n\n")
        assert result.exit_code == 0
        drop.assert_not_awaited()
