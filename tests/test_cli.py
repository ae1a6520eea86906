"""Tests for Atelier CLI commands."""

import importlib
from pathlib import Path
from unittest.mock import AsyncMock, patch

from rich.console import Console
from typer.testing import CliRunner

from atelier.autoplay.events import AutoplayEventType, EventLog
from atelier.cli import app
from atelier.cli.output import (
    build_event_table,
    build_phase_table,
    build_summary_table,
    format_status,
)
from atelier.core.errors import AutoplayStartError
from atelier.core.models import (
    AutoplayConfig,
    AutoplayIteration,
    AutoplayPhase,
    AutoplayState,
    AutoplayStatus,
    CompletionReason,
    MultiPhaseConfig,
    MultiPhaseState,
    PhaseProgress,
)
from tests.helpers import make_evaluation

runner = CliRunner()
run_module = importlib.import_module("atelier.cli.commands.run")
phases_module = importlib.import_module("atelier.cli.commands.phases")


def finished_state(status: AutoplayStatus = AutoplayStatus.COMPLETE) -> AutoplayState:
    return AutoplayState(
        status=status,
        config=AutoplayConfig(target_saved_count=2),
        current_iteration=1,
        iterations=[
            AutoplayIteration(
                iteration_number=1,
                prompt_ids=["p1", "p2"],
                evaluations=[make_evaluation("p1", 92), make_evaluation("p2", 40)],
                saved_count=1,
            )
        ],
        total_saved=1,
        completion_reason=(
            CompletionReason.MAX_ITERATIONS
            if status == AutoplayStatus.COMPLETE
            else CompletionReason.ERROR
        ),
        error="All image generations failed" if status == AutoplayStatus.ERROR else None,
    )


def phases_state(phase: AutoplayPhase = AutoplayPhase.COMPLETE) -> MultiPhaseState:
    return MultiPhaseState(
        phase=phase,
        sketch_progress=PhaseProgress(saved=2, target=2),
        gameplay_progress=PhaseProgress(saved=1, target=2),
        error=(
            "Phase 'gameplay' timed out - please try again"
            if phase == AutoplayPhase.ERROR
            else None
        ),
    )


class TestVersionCommand:
    """Tests for the --version flag."""

    def test_version_shows_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "Atelier Autoplay v0.4.0" in result.stdout


class TestValidateCommand:
    """Tests for the validate command."""

    def test_validate_valid_config(self, sample_yaml: Path) -> None:
        result = runner.invoke(app, ["validate", str(sample_yaml)])
        assert result.exit_code == 0
        assert "Configuration valid" in result.stdout
        assert "gameplay" in result.stdout
        assert "Warning" not in result.stdout

    def test_validate_nonexistent_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["validate", str(tmp_path / "nonexistent.yaml")])
        assert result.exit_code != 0

    def test_validate_invalid_config(self, tmp_path: Path) -> None:
        bad_config = tmp_path / "bad.yaml"
        bad_config.write_text("autoplay:\n  target_saved_count: 7\n")
        result = runner.invoke(app, ["validate", str(bad_config)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout

    def test_validate_warns_for_poster_mode(self, tmp_path: Path) -> None:
        config = tmp_path / "poster.yaml"
        config.write_text("context:\n  base_image: castle\n  output_mode: poster\n")
        result = runner.invoke(app, ["validate", str(config)])
        assert result.exit_code == 0
        assert "not available in poster mode" in result.stdout

    def test_validate_warns_without_base_image(self, tmp_path: Path) -> None:
        config = tmp_path / "empty.yaml"
        config.write_text("autoplay:\n  target_saved_count: 1\n")
        result = runner.invoke(app, ["validate", str(config)])
        assert result.exit_code == 0
        assert "no base image or seed prompts" in result.stdout


class TestRunCommand:
    """Tests for the run command with the autoplay loop mocked out."""

    def test_run_completes(self, sample_yaml: Path) -> None:
        with patch.object(
            run_module, "_run_autoplay", AsyncMock(return_value=finished_state())
        ) as mock_run:
            result = runner.invoke(app, ["run", str(sample_yaml)])
        assert result.exit_code == 0
        config, autoplay = mock_run.call_args.args
        assert config.services.base_url == "http://studio.test/api/ai"
        assert autoplay == AutoplayConfig(target_saved_count=2, max_iterations=3)

    def test_run_overrides(self, sample_yaml: Path) -> None:
        with patch.object(
            run_module, "_run_autoplay", AsyncMock(return_value=finished_state())
        ) as mock_run:
            result = runner.invoke(
                app, ["run", str(sample_yaml), "--target", "4", "--iterations", "9"]
            )
        assert result.exit_code == 0
        _, autoplay = mock_run.call_args.args
        assert autoplay.target_saved_count == 4
        assert autoplay.max_iterations == 3

    def test_target_out_of_range(self, sample_yaml: Path) -> None:
        result = runner.invoke(app, ["run", str(sample_yaml), "--target", "5"])
        assert result.exit_code == 2

    def test_error_status_exits_one(self, sample_yaml: Path) -> None:
        state = finished_state(AutoplayStatus.ERROR)
        with patch.object(run_module, "_run_autoplay", AsyncMock(return_value=state)):
            result = runner.invoke(app, ["run", str(sample_yaml)])
        assert result.exit_code == 1

    def test_start_refused(self, sample_yaml: Path) -> None:
        refusal = AutoplayStartError("Autoplay not available in Poster mode")
        with patch.object(run_module, "_run_autoplay", AsyncMock(side_effect=refusal)):
            result = runner.invoke(app, ["run", str(sample_yaml)])
        assert result.exit_code == 1
        assert "Cannot start autoplay" in result.stdout

    def test_invalid_config(self, tmp_path: Path) -> None:
        bad_config = tmp_path / "bad.yaml"
        bad_config.write_text("autoplay: [unclosed")
        result = runner.invoke(app, ["run", str(bad_config)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout


class TestPhasesCommand:
    """Tests for the phases command with the multi-phase loop mocked out."""

    def test_phases_use_config_defaults(self, sample_yaml: Path) -> None:
        with patch.object(
            phases_module, "_run_phases", AsyncMock(return_value=phases_state())
        ) as mock_run:
            result = runner.invoke(app, ["phases", str(sample_yaml)])
        assert result.exit_code == 0
        _, phase_config = mock_run.call_args.args
        assert phase_config == MultiPhaseConfig()

    def test_phase_overrides(self, sample_yaml: Path) -> None:
        with patch.object(
            phases_module, "_run_phases", AsyncMock(return_value=phases_state())
        ) as mock_run:
            result = runner.invoke(
                app, ["phases", str(sample_yaml), "--sketches", "0", "--gameplay", "3"]
            )
        assert result.exit_code == 0
        _, phase_config = mock_run.call_args.args
        assert phase_config.sketch_count == 0
        assert phase_config.gameplay_count == 3

    def test_no_phase_selected(self, sample_yaml: Path) -> None:
        result = runner.invoke(
            app, ["phases", str(sample_yaml), "--sketches", "0", "--gameplay", "0"]
        )
        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout

    def test_error_phase_exits_one(self, sample_yaml: Path) -> None:
        state = phases_state(AutoplayPhase.ERROR)
        with patch.object(phases_module, "_run_phases", AsyncMock(return_value=state)):
            result = runner.invoke(app, ["phases", str(sample_yaml)])
        assert result.exit_code == 1


class TestOutput:
    def _render(self, renderable: object) -> str:
        console = Console(record=True, width=120)
        console.print(renderable)
        return console.export_text()

    def test_summary_table(self) -> None:
        text = self._render(build_summary_table(finished_state()))
        assert "Autoplay summary" in text
        assert "92" in text

    def test_event_table(self) -> None:
        log = EventLog()
        log.record(AutoplayEventType.IMAGE_SAVED, "Saved image p1")
        text = self._render(build_event_table(log.entries))
        assert "image_saved" in text
        assert "Saved image p1" in text

    def test_format_status(self) -> None:
        assert format_status(AutoplayStatus.ERROR) == "[red]ERROR[/red]"

    def test_phase_table(self) -> None:
        text = self._render(build_phase_table(phases_state()))
        assert "sketch" in text
        assert "gameplay" in text
