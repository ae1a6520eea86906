"""Tests for atelier.autoplay.orchestrator module."""

from __future__ import annotations

import asyncio

import pytest

from atelier.autoplay.events import AutoplayEventType
from atelier.autoplay.orchestrator import (
    ALL_GENERATIONS_FAILED_MESSAGE,
    GENERATION_TIMEOUT_MESSAGE,
    NO_BASE_IMAGE_REASON,
    NO_PROMPTS_MESSAGE,
    POSTER_REASON,
    RUNNING_REASON,
    AutoplayOrchestrator,
)
from atelier.core.config import OrchestratorConfig
from atelier.core.errors import AutoplayStartError, ServiceError
from atelier.core.models import (
    AutoplayConfig,
    AutoplayState,
    AutoplayStatus,
    CompletionReason,
    CreativeContext,
    GeneratedImage,
    GeneratedPrompt,
    ImageStatus,
    OutputMode,
    PolishConfig,
    PolishRequest,
    PolishResult,
)
from tests.helpers import (
    FakeEvaluator,
    FakeFingerprinter,
    FakeImageGenerator,
    FakePanelSaver,
    FakePolisher,
    FakePromptGenerator,
    Gate,
    make_evaluation,
    make_prompts,
)


def build(
    context: CreativeContext,
    config: OrchestratorConfig | None = None,
    *,
    prompt_generator: FakePromptGenerator | None = None,
    image_generator: FakeImageGenerator | None = None,
    evaluator: FakeEvaluator | None = None,
    polisher: FakePolisher | None = None,
    panel_saver: FakePanelSaver | None = None,
    fingerprinter: FakeFingerprinter | None = None,
    polish_config: PolishConfig | None = None,
) -> AutoplayOrchestrator:
    return AutoplayOrchestrator(
        context,
        prompt_generator=prompt_generator or FakePromptGenerator(),
        image_generator=image_generator or FakeImageGenerator(),
        evaluator=evaluator or FakeEvaluator(),
        polisher=polisher or FakePolisher(),
        panel_saver=panel_saver or FakePanelSaver(),
        fingerprinter=fingerprinter,
        polish_config=polish_config,
        config=config or OrchestratorConfig(settle_delay_seconds=0),
    )


def rejected_first_iteration(prompt_id: str) -> int:
    return 40 if prompt_id.startswith("it1-") else 95


class TestStartAutoplay:
    """Tests for start preconditions."""

    def test_poster_mode_rejected(self, creative_context):
        context = creative_context.model_copy(update={"output_mode": OutputMode.POSTER})
        orchestrator = build(context)
        assert orchestrator.can_start_reason() == POSTER_REASON
        with pytest.raises(AutoplayStartError, match="Poster"):
            orchestrator.start_autoplay(AutoplayConfig())
        assert orchestrator.state.status == AutoplayStatus.IDLE

    def test_missing_base_image_and_prompts_rejected(self):
        orchestrator = build(CreativeContext(base_image="   "))
        assert orchestrator.can_start_reason() == NO_BASE_IMAGE_REASON
        with pytest.raises(AutoplayStartError):
            orchestrator.start_autoplay(AutoplayConfig())

    def test_seed_prompts_allow_start_without_base_image(self):
        context = CreativeContext(prompts=make_prompts("seed", 1))
        orchestrator = build(context)
        assert orchestrator.can_start_reason() is None

    async def test_second_start_while_running_rejected(self, creative_context):
        orchestrator = build(creative_context)
        orchestrator.start_autoplay(AutoplayConfig())
        assert orchestrator.state.status == AutoplayStatus.GENERATING
        assert orchestrator.can_start_reason() == RUNNING_REASON
        with pytest.raises(AutoplayStartError, match="currently running"):
            orchestrator.start_autoplay(AutoplayConfig())

    async def test_run_raises_when_cannot_start(self):
        orchestrator = build(CreativeContext(output_mode=OutputMode.POSTER, base_image="x"))
        with pytest.raises(AutoplayStartError):
            await orchestrator.run(AutoplayConfig())


class TestRunToCompletion:
    """End-to-end runs against in-memory services."""

    async def test_rejected_iteration_continues_then_target_met(self, creative_context):
        """Iteration 1 saves nothing, iteration 2 reaches the target of 2."""
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=rejected_first_iteration),
        )
        snapshots: list[AutoplayState] = []
        orchestrator.machine.subscribe(snapshots.append)

        final = await orchestrator.run(AutoplayConfig(target_saved_count=2, max_iterations=3))

        assert final.status == AutoplayStatus.COMPLETE
        assert final.completion_reason == CompletionReason.TARGET_MET
        assert final.current_iteration == 2
        assert final.total_saved == 2
        assert [i.saved_count for i in final.iterations] == [0, 2]

        after_first = [s for s in snapshots if s.current_iteration == 2]
        assert after_first[0].status == AutoplayStatus.GENERATING
        assert all(
            s.status != AutoplayStatus.COMPLETE for s in snapshots if s.current_iteration == 1
        )

    async def test_totals_never_decrease(self, creative_context):
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=rejected_first_iteration),
        )
        snapshots: list[AutoplayState] = []
        orchestrator.machine.subscribe(snapshots.append)

        await orchestrator.run(AutoplayConfig(target_saved_count=2, max_iterations=3))

        saved = [s.total_saved for s in snapshots]
        iterations = [s.current_iteration for s in snapshots]
        assert saved == sorted(saved)
        assert iterations == sorted(iterations)

    async def test_each_dispatch_key_runs_once(self, creative_context):
        orchestrator = build(creative_context, evaluator=FakeEvaluator(score_for=75))

        await orchestrator.run(AutoplayConfig(target_saved_count=4, max_iterations=3))

        counts = orchestrator.dispatch_counts
        assert counts
        assert all(count == 1 for count in counts.values())
        assert (AutoplayStatus.GENERATING, 1, 0) in counts
        assert (AutoplayStatus.POLISHING, 1, 0) in counts

    async def test_max_iterations_when_nothing_approved(self, creative_context):
        orchestrator = build(creative_context, evaluator=FakeEvaluator(score_for=20))

        final = await orchestrator.run(AutoplayConfig(target_saved_count=2, max_iterations=2))

        assert final.status == AutoplayStatus.COMPLETE
        assert final.completion_reason == CompletionReason.MAX_ITERATIONS
        assert final.current_iteration == 2
        assert final.total_saved == 0

    async def test_saves_only_up_to_remaining_target(self, creative_context):
        saver = FakePanelSaver()
        orchestrator = build(
            creative_context,
            prompt_generator=FakePromptGenerator(per_batch=3),
            evaluator=FakeEvaluator(score_for=lambda pid: {"it1-1": 91, "it1-2": 99}.get(pid, 93)),
            panel_saver=saver,
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=2, max_iterations=3))

        assert final.total_saved == 2
        assert [prompt_id for prompt_id, _, _ in saver.saved] == ["it1-2", "it1-3"]
        assert len(orchestrator.events.of_type(AutoplayEventType.IMAGE_SAVED)) == 2

    async def test_completion_event_recorded(self, creative_context):
        orchestrator = build(creative_context, evaluator=FakeEvaluator(score_for=95))

        await orchestrator.run(AutoplayConfig(target_saved_count=1))

        completed = orchestrator.events.of_type(AutoplayEventType.PHASE_COMPLETED)
        assert completed[-1].message == "Autoplay complete: target_met (1 saved)"

    async def test_max_prompts_per_iteration(self, creative_context):
        generator = FakeImageGenerator()
        orchestrator = build(
            creative_context,
            OrchestratorConfig(settle_delay_seconds=0, max_prompts_per_iteration=1),
            prompt_generator=FakePromptGenerator(per_batch=3),
            image_generator=generator,
            evaluator=FakeEvaluator(score_for=95),
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=1))

        assert generator.calls == [["it1-1"]]
        assert final.iterations[0].prompt_ids == ["it1-1"]


class TestFeedbackAndBrief:
    """Feedback, refinement brief and evolved base image across iterations."""

    async def test_feedback_passed_to_next_regeneration(self, creative_context):
        prompts = FakePromptGenerator()
        orchestrator = build(
            creative_context,
            prompt_generator=prompts,
            evaluator=FakeEvaluator(
                score_for=40,
                strengths=["neon glow"],
                improvements=["fix hand anatomy"],
                feedback="Hands are deformed",
            ),
        )

        await orchestrator.run(AutoplayConfig(target_saved_count=1, max_iterations=2))

        first, second = prompts.requests
        assert first.feedback is None
        assert first.iteration_context is None
        assert second.feedback is not None
        assert second.feedback.positive.startswith("Keep: neon glow")
        assert second.feedback.negative.startswith("Avoid: fix hand anatomy")

    async def test_brief_and_base_image_evolve(self, creative_context):
        prompts = FakePromptGenerator()
        orchestrator = build(
            creative_context,
            prompt_generator=prompts,
            evaluator=FakeEvaluator(
                score_for=40,
                strengths=["neon glow"],
                improvements=["fix hand anatomy"],
                feedback="Hands are deformed",
            ),
        )

        await orchestrator.run(AutoplayConfig(target_saved_count=1, max_iterations=2))

        second = prompts.requests[1]
        assert second.iteration_context is not None
        assert second.iteration_context.startswith("[Iter 1] Strengths: neon glow")
        assert "top score 40/100" in second.iteration_context
        assert "Fix: Hands are deformed" in second.iteration_context
        assert second.base_image == (
            "Neon-lit street market, third-person view"
            " — emphasize neon glow; improve fix hand anatomy"
        )
        assert orchestrator.refinement_brief.count("[Iter") == 2

    async def test_base_image_keeps_last_two_rounds(self, creative_context):
        rounds = iter(["alpha", "beta", "gamma"])
        strengths_by_iteration: dict[str, str] = {}
        evaluator = FakeEvaluator(score_for=40)
        original_evaluate = evaluator.evaluate

        async def evaluate(image_url, prompt_id, criteria):
            iteration = prompt_id.split("-")[0]
            if iteration not in strengths_by_iteration:
                strengths_by_iteration[iteration] = next(rounds)
            evaluation = await original_evaluate(image_url, prompt_id, criteria)
            return evaluation.model_copy(update={"strengths": [strengths_by_iteration[iteration]]})

        evaluator.evaluate = evaluate  # type: ignore[method-assign]
        orchestrator = build(creative_context, evaluator=evaluator)

        await orchestrator.run(AutoplayConfig(target_saved_count=1, max_iterations=3))

        evolved = orchestrator.evolved_base_image
        assert "alpha" not in evolved
        assert evolved.endswith(" — emphasize beta — emphasize gamma")


class TestPolishing:
    """Polish integration: improvement, cap, failures."""

    async def test_improved_polish_replaces_image(self, creative_context):
        def improve(request: PolishRequest) -> PolishResult:
            return PolishResult(
                success=True,
                improved=True,
                polished_url=f"https://images.test/{request.prompt_id}-polished.png",
                re_evaluation=make_evaluation(request.prompt_id, 85, mode_compliance=True),
                score_delta=25,
            )

        saver = FakePanelSaver()
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=60, mode_compliance=True),
            polisher=FakePolisher(improve),
            panel_saver=saver,
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=1))

        assert final.completion_reason == CompletionReason.TARGET_MET
        assert saver.saved == [
            (
                "it1-1",
                "wide shot of a neon market, scene 1",
                "https://images.test/it1-1-polished.png",
            )
        ]
        evaluations = final.iterations[0].evaluations
        assert len(evaluations) == 4
        assert [e.polished for e in evaluations] == [False, False, True, True]
        assert orchestrator.images["it1-1"].url.endswith("-polished.png")
        assert len(orchestrator.events.of_type(AutoplayEventType.IMAGE_POLISHED)) == 2

    async def test_rescue_request_carries_criteria_and_scores(self, creative_context):
        polisher = FakePolisher()
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=60, improvements=["image is blurry"]),
            polisher=polisher,
        )

        await orchestrator.run(AutoplayConfig(target_saved_count=1, max_iterations=1))

        request = polisher.requests[0]
        assert request.polish_type == "rescue"
        assert request.original_score == 60
        assert request.criteria.original_prompt == creative_context.vision_sentence
        assert "Sharpen and enhance detail clarity" in request.polish_prompt

    async def test_polish_attempts_capped_across_iterations(self, creative_context):
        fixed = [
            GeneratedPrompt(id="p-1", text="castle gate"),
            GeneratedPrompt(id="p-2", text="harbor"),
        ]
        polisher = FakePolisher()
        orchestrator = build(
            creative_context,
            prompt_generator=FakePromptGenerator(batches=[fixed]),
            evaluator=FakeEvaluator(score_for=60),
            polisher=polisher,
            polish_config=PolishConfig(max_polish_attempts=1),
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=2, max_iterations=3))

        assert final.completion_reason == CompletionReason.MAX_ITERATIONS
        assert polisher.calls_for("p-1") == 1
        assert polisher.calls_for("p-2") == 1
        assert orchestrator.polish_attempts == {"p-1": 1, "p-2": 1}

    async def test_zero_attempts_disables_polish(self, creative_context):
        polisher = FakePolisher()
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=60),
            polisher=polisher,
            polish_config=PolishConfig(max_polish_attempts=0),
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=1, max_iterations=1))

        assert polisher.requests == []
        assert final.iterations[0].polish_candidates is None

    async def test_polish_error_does_not_stop_run(self, creative_context):
        def fail(request: PolishRequest) -> PolishResult:
            return PolishResult(success=False, error="upstream 500")

        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=80),
            polisher=FakePolisher(fail),
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=2, max_iterations=1))

        assert final.completion_reason == CompletionReason.TARGET_MET
        errors = orchestrator.events.of_type(AutoplayEventType.POLISH_ERROR)
        assert len(errors) == 2
        assert errors[0].message == "Polish failed: upstream 500"
        assert all(not r.improved for r in final.iterations[0].polish_results or [])

    async def test_polish_timeout_recorded(self, creative_context):
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=80),
            polisher=FakePolisher(delay=1.0),
            polish_config=PolishConfig(polish_timeout_ms=10),
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=2, max_iterations=1))

        assert final.total_saved == 2
        errors = orchestrator.events.of_type(AutoplayEventType.POLISH_ERROR)
        assert errors[0].message == "Polish failed: Polish operation timed out"

    async def test_no_improvement_keeps_original(self, creative_context):
        saver = FakePanelSaver()
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=80),
            panel_saver=saver,
        )

        await orchestrator.run(AutoplayConfig(target_saved_count=1, max_iterations=1))

        assert saver.saved[0][2] == "https://images.test/it1-1.png"
        assert len(orchestrator.events.of_type(AutoplayEventType.POLISH_NO_IMPROVEMENT)) == 2


class TestFailures:
    """Fatal and degraded failure paths."""

    async def test_no_prompts_is_fatal(self, creative_context):
        orchestrator = build(
            creative_context,
            prompt_generator=FakePromptGenerator(batches=[[]]),
        )

        final = await orchestrator.run(AutoplayConfig())

        assert final.status == AutoplayStatus.ERROR
        assert final.error == NO_PROMPTS_MESSAGE
        assert final.completion_reason == CompletionReason.ERROR

    async def test_all_generations_failed_is_fatal(self, creative_context):
        orchestrator = build(
            creative_context,
            image_generator=FakeImageGenerator(failing={"it1-1", "it1-2"}),
        )

        final = await orchestrator.run(AutoplayConfig())

        assert final.status == AutoplayStatus.ERROR
        assert final.error == ALL_GENERATIONS_FAILED_MESSAGE
        assert len(orchestrator.events.of_type(AutoplayEventType.IMAGE_FAILED)) == 2
        last = orchestrator.events.entries[-1]
        assert last.message == f"Autoplay stopped: {ALL_GENERATIONS_FAILED_MESSAGE}"

    async def test_partial_generation_failure_continues(self, creative_context):
        evaluator = FakeEvaluator(score_for=95)
        orchestrator = build(
            creative_context,
            image_generator=FakeImageGenerator(failing={"it1-2"}),
            evaluator=evaluator,
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=1))

        assert final.completion_reason == CompletionReason.TARGET_MET
        assert [prompt_id for _, prompt_id in evaluator.calls] == ["it1-1"]

    async def test_regeneration_failure_falls_back_to_seed_prompts(self):
        context = CreativeContext(prompts=[GeneratedPrompt(id="seed-1", text="lighthouse at dusk")])
        orchestrator = build(
            context,
            prompt_generator=FakePromptGenerator(error=ServiceError("prompts", "HTTP error: 503")),
            evaluator=FakeEvaluator(score_for=95),
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=1))

        assert final.completion_reason == CompletionReason.TARGET_MET
        assert final.iterations[0].prompt_ids == ["seed-1"]
        errors = orchestrator.events.of_type(AutoplayEventType.ERROR)
        assert errors[0].message.startswith("Prompt regeneration failed")
        assert errors[0].details["fallback_prompts"] == 1

    async def test_exhausted_fallback_is_fatal(self):
        context = CreativeContext(prompts=[GeneratedPrompt(id="seed-1", text="lighthouse at dusk")])
        orchestrator = build(
            context,
            prompt_generator=FakePromptGenerator(error=ServiceError("prompts", "down")),
            evaluator=FakeEvaluator(score_for=95),
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=2, max_iterations=3))

        assert final.status == AutoplayStatus.ERROR
        assert final.error == NO_PROMPTS_MESSAGE
        assert final.total_saved == 1

    async def test_evaluation_failures_become_rejections(self, creative_context):
        orchestrator = build(creative_context, evaluator=FakeEvaluator(failing={"*"}))

        final = await orchestrator.run(AutoplayConfig(target_saved_count=1, max_iterations=1))

        assert final.status == AutoplayStatus.COMPLETE
        assert final.completion_reason == CompletionReason.MAX_ITERATIONS
        evaluations = final.iterations[0].evaluations
        assert [e.score for e in evaluations] == [0, 0]
        assert all(e.feedback and e.feedback.startswith("Evaluation error") for e in evaluations)

    async def test_save_failure_is_recorded_and_skipped(self, creative_context):
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=95),
            panel_saver=FakePanelSaver(error=ServiceError("panel", "down")),
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=1, max_iterations=1))

        assert final.completion_reason == CompletionReason.MAX_ITERATIONS
        assert final.total_saved == 0
        messages = [e.message for e in orchestrator.events.of_type(AutoplayEventType.ERROR)]
        assert any(m.startswith("Save failed") for m in messages)

    async def test_unsuccessful_save_not_counted(self, creative_context):
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=95),
            panel_saver=FakePanelSaver(ok=False),
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=1, max_iterations=1))

        assert final.total_saved == 0
        assert orchestrator.events.of_type(AutoplayEventType.IMAGE_SAVED) == []

    async def test_unexpected_evaluator_exception_becomes_rejection(self, creative_context):
        class BuggyEvaluator(FakeEvaluator):
            async def evaluate(self, image_url, prompt_id, criteria):
                if prompt_id == "it1-1":
                    raise RuntimeError("vision client bug")
                return await super().evaluate(image_url, prompt_id, criteria)

        orchestrator = build(creative_context, evaluator=BuggyEvaluator(score_for=95))

        final = await asyncio.wait_for(
            orchestrator.run(AutoplayConfig(target_saved_count=1)), timeout=5
        )

        assert final.status == AutoplayStatus.COMPLETE
        assert final.completion_reason == CompletionReason.TARGET_MET
        by_id = {e.prompt_id: e for e in final.iterations[0].evaluations}
        assert by_id["it1-1"].score == 0
        assert by_id["it1-1"].feedback == "Evaluation error: vision client bug"
        assert orchestrator.can_start_reason() is None

    async def test_unexpected_prompt_generator_exception_ends_run(self, creative_context):
        orchestrator = build(
            creative_context,
            prompt_generator=FakePromptGenerator(error=RuntimeError("prompt client bug")),
        )

        final = await asyncio.wait_for(orchestrator.run(AutoplayConfig()), timeout=5)

        assert final.status == AutoplayStatus.ERROR
        assert final.error == "prompt client bug"
        assert final.completion_reason == CompletionReason.ERROR
        assert orchestrator.can_start_reason() is None
        messages = [e.message for e in orchestrator.events.of_type(AutoplayEventType.ERROR)]
        assert "Unexpected error while generating: prompt client bug" in messages

    async def test_unexpected_stream_exception_ends_run(self, creative_context):
        class BrokenStream(FakeImageGenerator):
            async def generate(self, prompts):
                self.calls.append([p.id for p in prompts])
                yield GeneratedImage(prompt_id=prompts[0].id, status=ImageStatus.GENERATING)
                raise RuntimeError("stream decoder bug")

        orchestrator = build(creative_context, image_generator=BrokenStream())

        final = await asyncio.wait_for(orchestrator.run(AutoplayConfig()), timeout=5)

        assert final.status == AutoplayStatus.ERROR
        assert final.error == "stream decoder bug"
        assert orchestrator.events.entries[-1].message == "Autoplay stopped: stream decoder bug"


class TestBackupTrigger:
    """Re-triggering prompts that never produced an image."""

    async def test_missing_image_retriggered(self, creative_context):
        generator = FakeImageGenerator(dropped={"it1-2"})
        orchestrator = build(
            creative_context,
            image_generator=generator,
            evaluator=FakeEvaluator(score_for=95),
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=2))

        assert generator.calls == [["it1-1", "it1-2"], ["it1-2"]]
        assert final.total_saved == 2

    async def test_without_backup_missing_image_fails(self, creative_context):
        generator = FakeImageGenerator(dropped={"it1-2"})
        orchestrator = build(
            creative_context,
            OrchestratorConfig(settle_delay_seconds=0, backup_trigger_attempts=0),
            image_generator=generator,
            evaluator=FakeEvaluator(score_for=95),
        )

        final = await orchestrator.run(AutoplayConfig(target_saved_count=1))

        assert generator.calls == [["it1-1", "it1-2"]]
        assert orchestrator.images["it1-2"].status == ImageStatus.FAILED
        assert orchestrator.images["it1-2"].error == "No image produced"
        assert final.completion_reason == CompletionReason.TARGET_MET


class TestCancellation:
    """Abort and the generation watchdog."""

    async def test_abort_during_generation(self, creative_context):
        orchestrator = build(creative_context, image_generator=FakeImageGenerator(hang=True))

        async def abort_soon() -> bool:
            await asyncio.sleep(0.05)
            return orchestrator.abort()

        final, accepted = await asyncio.gather(orchestrator.run(AutoplayConfig()), abort_soon())

        assert accepted is True
        assert final.status == AutoplayStatus.COMPLETE
        assert final.completion_reason == CompletionReason.ABORTED
        assert final.abort_requested is True
        messages = [e.message for e in orchestrator.events.entries]
        assert "Autoplay aborted by user" in messages

    def test_abort_when_idle_ignored(self, creative_context):
        orchestrator = build(creative_context)
        assert orchestrator.abort() is False

    async def test_generation_watchdog_is_fatal(self, creative_context):
        orchestrator = build(
            creative_context,
            OrchestratorConfig(settle_delay_seconds=0, generation_timeout_seconds=0.05),
            image_generator=FakeImageGenerator(hang=True),
        )

        final = await asyncio.wait_for(orchestrator.run(AutoplayConfig()), timeout=5)

        assert final.status == AutoplayStatus.ERROR
        assert final.error == GENERATION_TIMEOUT_MESSAGE
        assert len(orchestrator.events.of_type(AutoplayEventType.TIMEOUT)) == 1

    async def test_reset_returns_to_idle(self, creative_context):
        orchestrator = build(creative_context, evaluator=FakeEvaluator(score_for=95))
        await orchestrator.run(AutoplayConfig(target_saved_count=1))

        orchestrator.reset()

        assert orchestrator.state.status == AutoplayStatus.IDLE
        assert len(orchestrator.events) == 0
        assert orchestrator.dispatch_counts == {}
        assert orchestrator.refinement_brief == ""

    async def test_second_run_starts_clean(self, creative_context):
        orchestrator = build(creative_context, evaluator=FakeEvaluator(score_for=95))
        await orchestrator.run(AutoplayConfig(target_saved_count=1))

        final = await orchestrator.run(AutoplayConfig(target_saved_count=1))

        assert final.total_saved == 1
        assert final.current_iteration == 1
        assert orchestrator.polish_attempts == {}

    @pytest.mark.parametrize(
        ("phase", "second_score"),
        [
            (AutoplayStatus.EVALUATING, 40),
            (AutoplayStatus.POLISHING, 60),
            (AutoplayStatus.REFINING, 95),
        ],
    )
    async def test_abort_mid_iteration_keeps_saved_images(
        self, creative_context, phase, second_score
    ):
        def in_second_iteration(prompt_id: str) -> bool:
            return prompt_id.startswith("it2-")

        def score_for(prompt_id: str) -> int:
            if in_second_iteration(prompt_id):
                return second_score
            return 95 if prompt_id == "it1-1" else 40

        gate = Gate(in_second_iteration)
        panel_saver = FakePanelSaver(gate=gate if phase == AutoplayStatus.REFINING else None)
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(
                score_for=score_for,
                gate=gate if phase == AutoplayStatus.EVALUATING else None,
            ),
            polisher=FakePolisher(gate=gate if phase == AutoplayStatus.POLISHING else None),
            panel_saver=panel_saver,
        )

        async def abort_when_blocked() -> AutoplayStatus:
            await gate.entered.wait()
            status = orchestrator.state.status
            orchestrator.abort()
            return status

        final, blocked_in = await asyncio.wait_for(
            asyncio.gather(
                orchestrator.run(AutoplayConfig(target_saved_count=2)),
                abort_when_blocked(),
            ),
            timeout=5,
        )

        assert blocked_in == phase
        assert final.status == AutoplayStatus.COMPLETE
        assert final.completion_reason == CompletionReason.ABORTED
        assert final.total_saved == 1
        assert final.current_iteration == 2
        assert [saved[0] for saved in panel_saver.saved] == ["it1-1"]

    async def test_abort_skips_remaining_polish_candidates(self, creative_context):
        gate = Gate(lambda prompt_id: prompt_id == "it1-1")
        polisher = FakePolisher(gate=gate)
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=60),
            polisher=polisher,
        )

        async def abort_when_blocked() -> None:
            await gate.entered.wait()
            orchestrator.abort()

        final, _ = await asyncio.wait_for(
            asyncio.gather(orchestrator.run(AutoplayConfig()), abort_when_blocked()),
            timeout=5,
        )

        assert final.completion_reason == CompletionReason.ABORTED
        assert polisher.calls_for("it1-1") == 1
        assert polisher.calls_for("it1-2") == 0
        skipped = orchestrator.events.of_type(AutoplayEventType.POLISH_SKIPPED)
        assert len(skipped) == 1
        assert skipped[0].details["prompt_ids"] == ["it1-2"]
        assert [o.prompt_id for o in final.iterations[0].polish_results] == ["it1-1"]

    async def test_watchdog_armed_once_per_iteration(self, creative_context):
        orchestrator = build(creative_context)

        orchestrator._arm_watchdog(1)
        first = orchestrator._watchdog
        orchestrator._arm_watchdog(1)
        assert orchestrator._watchdog is first

        orchestrator._arm_watchdog(2)
        await asyncio.sleep(0.01)
        assert first.cancelled()
        assert orchestrator._watchdog is not first
        assert orchestrator._watchdog.get_name() == "autoplay-watchdog-2"
        orchestrator._disarm_watchdog()
        await asyncio.sleep(0.01)

    async def test_stale_watchdog_does_not_fail_later_phase(self, creative_context):
        class SlowEvaluator(FakeEvaluator):
            async def evaluate(self, image_url, prompt_id, criteria):
                await asyncio.sleep(0.1)
                return await super().evaluate(image_url, prompt_id, criteria)

        orchestrator = build(
            creative_context,
            OrchestratorConfig(settle_delay_seconds=0, generation_timeout_seconds=0.05),
            evaluator=SlowEvaluator(score_for=95),
        )

        final = await asyncio.wait_for(
            orchestrator.run(AutoplayConfig(target_saved_count=2)), timeout=5
        )

        assert final.status == AutoplayStatus.COMPLETE
        assert final.completion_reason == CompletionReason.TARGET_MET
        assert orchestrator.events.of_type(AutoplayEventType.TIMEOUT) == []

    async def test_watchdog_failure_is_recorded(self, creative_context):
        orchestrator = build(creative_context)

        async def broken_watch(iteration: int) -> None:
            raise RuntimeError("clock went backwards")

        orchestrator._watch_generation = broken_watch
        orchestrator._arm_watchdog(1)
        await asyncio.sleep(0.01)

        errors = orchestrator.events.of_type(AutoplayEventType.ERROR)
        assert [e.message for e in errors] == ["Generation watchdog failed: clock went backwards"]


class TestIntelligenceIntegration:
    async def test_saved_images_fingerprinted(self, creative_context):
        fingerprinter = FakeFingerprinter()
        orchestrator = build(
            creative_context,
            evaluator=FakeEvaluator(score_for=95),
            fingerprinter=fingerprinter,
        )

        await orchestrator.run(AutoplayConfig(target_saved_count=2))

        assert sorted(fingerprinter.calls) == [
            "https://images.test/it1-1.png",
            "https://images.test/it1-2.png",
        ]
        assert len(orchestrator.intelligence.inventory.fingerprints) == 2

    async def test_diversity_disabled_skips_fingerprinting(self, creative_context):
        fingerprinter = FakeFingerprinter()
        orchestrator = build(
            creative_context,
            OrchestratorConfig(settle_delay_seconds=0, diversity_enabled=False),
            evaluator=FakeEvaluator(score_for=95),
            fingerprinter=fingerprinter,
        )

        await orchestrator.run(AutoplayConfig(target_saved_count=1))

        assert fingerprinter.calls == []
