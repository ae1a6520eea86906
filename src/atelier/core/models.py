"""Domain models for autoplay runs.

Everything the orchestrator, the learning components and the service
clients exchange is defined here as pydantic models: run state and
iterations, evaluations, polish decisions and results, prompts, images,
creative context and visual fingerprints.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from atelier.utils.time import utc_now

MAX_ITERATIONS_HARD_CAP = 3
"""Upper bound on iterations per run, whatever the configuration asks for."""

DEFAULT_APPROVAL_THRESHOLD = 70


class OutputMode(str, Enum):
    """Kind of visual the run produces."""

    GAMEPLAY = "gameplay"
    """In-game screenshot with HUD/UI elements."""

    SKETCH = "sketch"
    """Hand-drawn concept sketch."""

    TRAILER = "trailer"
    """Cinematic frame for video."""

    POSTER = "poster"
    """Key art; not supported by autoplay."""

    REALISTIC = "realistic"
    """Photorealistic render."""

    CONCEPT = "concept"
    """Clean concept art."""


class AutoplayStatus(str, Enum):
    """Status of an autoplay run."""

    IDLE = "idle"
    GENERATING = "generating"
    EVALUATING = "evaluating"
    POLISHING = "polishing"
    REFINING = "refining"
    COMPLETE = "complete"
    ERROR = "error"


RUNNING_STATUSES = frozenset({
    AutoplayStatus.GENERATING,
    AutoplayStatus.EVALUATING,
    AutoplayStatus.POLISHING,
    AutoplayStatus.REFINING,
})


class CompletionReason(str, Enum):
    """Why a run stopped."""

    TARGET_MET = "target_met"
    MAX_ITERATIONS = "max_iterations"
    ABORTED = "aborted"
    ERROR = "error"


class ImageStatus(str, Enum):
    """Per-image generation status."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"


# =============================================================================
# Configuration records owned by a run
# =============================================================================


class AutoplayConfig(BaseModel):
    """Targets for one autoplay run."""

    target_saved_count: int = Field(
        default=2,
        ge=1,
        le=4,
        description="Number of images to save before the run completes",
    )
    max_iterations: int = Field(
        default=3,
        ge=1,
        description=f"Iterations before giving up (capped at {MAX_ITERATIONS_HARD_CAP})",
    )

    @field_validator("max_iterations")
    @classmethod
    def _cap_iterations(cls, value: int) -> int:
        return min(value, MAX_ITERATIONS_HARD_CAP)


class MultiPhaseConfig(BaseModel):
    """Targets for a sketch phase followed by a gameplay phase."""

    sketch_count: int = Field(default=2, ge=0, le=4)
    gameplay_count: int = Field(default=2, ge=0, le=4)
    max_iterations_per_image: int = Field(
        default=2,
        ge=1,
        description="Iteration limit of each single-mode run inside a phase",
    )
    max_runs_per_phase: int = Field(
        default=3,
        ge=1,
        description="Single-mode runs a phase may start before it gives up",
    )
    seconds_per_image: float = Field(default=75.0, gt=0)
    min_phase_timeout_seconds: float = Field(default=120.0, gt=0)

    @field_validator("max_iterations_per_image")
    @classmethod
    def _cap_iterations(cls, value: int) -> int:
        return min(value, MAX_ITERATIONS_HARD_CAP)

    @model_validator(mode="after")
    def _require_a_phase(self) -> MultiPhaseConfig:
        if self.sketch_count == 0 and self.gameplay_count == 0:
            raise ValueError("at least one of sketch_count or gameplay_count must be positive")
        return self

    @property
    def target_count(self) -> int:
        return self.sketch_count + self.gameplay_count

    def phase_timeout(self, target: int) -> float:
        """Safety timeout for a phase; scales with its target."""
        return max(self.min_phase_timeout_seconds, self.seconds_per_image * target)


class PolishConfig(BaseModel):
    """Thresholds for the rescue and excellence polish tracks."""

    rescue_enabled: bool = True
    rescue_floor: int = Field(
        default=50, ge=0, le=100,
        description="Lowest score still worth a rescue polish",
    )
    excellence_enabled: bool = True
    excellence_floor: int = Field(default=70, ge=0, le=100)
    excellence_ceiling: int = Field(
        default=90, ge=0, le=100,
        description="Scores at or above this are saved without polish",
    )
    excellence_intensity: Literal["subtle", "creative"] = "creative"
    max_polish_attempts: int = Field(
        default=1, ge=0,
        description="Polish attempts per prompt id for the whole run",
    )
    polish_timeout_ms: int = Field(default=30_000, gt=0)
    min_score_improvement: int = Field(
        default=5, ge=0,
        description="Score gain required to accept a polished image",
    )


# =============================================================================
# Creative input
# =============================================================================


class Dimension(BaseModel):
    """A content axis (environment, mood, art style...) with a reference value."""

    id: str
    type: str = "custom"
    label: str
    reference: str = ""
    weight: float = Field(default=1.0, ge=0.0)


class Breakdown(BaseModel):
    """Structured analysis of the user's vision."""

    format: str
    key_elements: list[str] = Field(default_factory=list)


class GeneratedPrompt(BaseModel):
    """An image prompt produced by the prompt generator."""

    id: str
    text: str
    scene_number: int | None = None
    scene_type: str | None = None


class CreativeContext(BaseModel):
    """What the user asked for: the input of every run."""

    vision_sentence: str = ""
    base_image: str = Field(
        default="",
        description="Base image description that prompt generation starts from",
    )
    dimensions: list[Dimension] = Field(default_factory=list)
    output_mode: OutputMode = OutputMode.GAMEPLAY
    breakdown: Breakdown | None = None
    prompts: list[GeneratedPrompt] = Field(
        default_factory=list,
        description="Prompts already generated before autoplay started",
    )


class GeneratedImage(BaseModel):
    """Generation status of the image for one prompt."""

    prompt_id: str
    status: ImageStatus = ImageStatus.PENDING
    url: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ImageStatus.COMPLETE, ImageStatus.FAILED)

    @property
    def is_usable(self) -> bool:
        return self.status == ImageStatus.COMPLETE and bool(self.url)


# =============================================================================
# Evaluation
# =============================================================================


class EvaluationCriteria(BaseModel):
    """Scoring rubric sent to the evaluation service."""

    original_prompt: str
    expected_aspects: list[str] = Field(default_factory=list)
    output_mode: str = OutputMode.GAMEPLAY.value
    approval_threshold: int = DEFAULT_APPROVAL_THRESHOLD
    breakdown: Breakdown | None = None


class ImageEvaluation(BaseModel):
    """Scores for one image. Frozen once created."""

    model_config = ConfigDict(frozen=True)

    prompt_id: str
    approved: bool
    score: int = Field(ge=0, le=100)
    technical_score: int | None = Field(default=None, ge=0, le=100)
    goal_fit_score: int | None = Field(default=None, ge=0, le=100)
    aesthetic_score: int | None = Field(default=None, ge=0, le=100)
    mode_compliance: bool | None = None
    feedback: str | None = None
    improvements: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)
    polished: bool = Field(
        default=False,
        description="True for the re-evaluation of a polished image",
    )

    def meets_approval(self, threshold: int = DEFAULT_APPROVAL_THRESHOLD) -> bool:
        """Approval rule: score at threshold, mode respected, no major technical flaws."""
        if self.mode_compliance is False:
            return False
        if self.technical_score is not None and self.technical_score < 50:
            return False
        return self.score >= threshold


class RefinementFeedback(BaseModel):
    """Positive/negative guidance for the next prompt generation."""

    positive: str = ""
    negative: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.positive and not self.negative


# =============================================================================
# Polish
# =============================================================================

PolishType = Literal["rescue", "excellence"]


class PolishDecision(BaseModel):
    """Outcome of the polish decision for one evaluation."""

    action: Literal["save", "polish", "reject"]
    reason: str
    polish_prompt: str | None = None
    polish_type: PolishType | None = None


class PolishCandidate(BaseModel):
    """An image queued for polish in the current iteration."""

    prompt_id: str
    image_url: str
    original_score: int
    polish_prompt: str
    polish_type: PolishType


class PolishRequest(BaseModel):
    """Payload for the polish service."""

    image_url: str
    prompt_id: str
    polish_prompt: str
    criteria: EvaluationCriteria
    polish_type: PolishType
    aspect_ratio: str = "16:9"
    min_score_improvement: int = 5
    original_score: int | None = None


class PolishResult(BaseModel):
    """What the polish service returned."""

    success: bool
    improved: bool = False
    polished_url: str | None = None
    re_evaluation: ImageEvaluation | None = None
    score_delta: int | None = None
    error: str | None = None


class PolishOutcome(BaseModel):
    """Per-candidate polish record kept on the iteration."""

    prompt_id: str
    improved: bool
    new_score: int | None = None
    polished_url: str | None = None
    re_evaluation: ImageEvaluation | None = None
    error: str | None = None


# =============================================================================
# Prompt regeneration
# =============================================================================


class RegenerationRequest(BaseModel):
    """Input of one prompt regeneration call."""

    base_image: str
    output_mode: OutputMode
    vision_sentence: str = ""
    dimensions: list[Dimension] = Field(default_factory=list)
    feedback: RefinementFeedback | None = None
    iteration_context: str | None = Field(
        default=None,
        description="Cumulative refinement brief from earlier iterations",
    )


# =============================================================================
# Visual fingerprints
# =============================================================================

Composition = Literal["wide", "medium", "close-up", "portrait", "action", "environmental"]
SubjectFocus = Literal["character", "environment", "action", "object", "group"]
Mood = Literal["dramatic", "peaceful", "tense", "mysterious", "energetic", "melancholic"]
Lighting = Literal["day", "night", "golden-hour", "dawn", "artificial", "dramatic"]
CameraAngle = Literal["eye-level", "low-angle", "high-angle", "aerial", "dutch", "over-shoulder"]
Activity = Literal["static", "subtle", "dynamic", "intense"]


class FingerprintFeatures(BaseModel):
    """Closed-enum visual features of one image."""

    model_config = ConfigDict(frozen=True)

    color_tone: str = ""
    composition: Composition
    subject_focus: SubjectFocus
    mood: Mood
    lighting: Lighting
    camera_angle: CameraAngle
    activity: Activity


class VisualFingerprint(BaseModel):
    """Features of a saved image, tied to its prompt."""

    model_config = ConfigDict(frozen=True)

    prompt_id: str
    image_url: str
    features: FingerprintFeatures
    timestamp: datetime = Field(default_factory=utc_now)


# =============================================================================
# Run state
# =============================================================================


class AutoplayIteration(BaseModel):
    """One pass through generate, evaluate, polish and refine."""

    iteration_number: int
    prompt_ids: list[str] = Field(default_factory=list)
    evaluations: list[ImageEvaluation] = Field(default_factory=list)
    saved_count: int = 0
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    polish_candidates: list[PolishCandidate] | None = None
    polish_results: list[PolishOutcome] | None = None
    feedback_ready: bool = False

    def latest_evaluations(self) -> list[ImageEvaluation]:
        """Newest evaluation per prompt id, in first-seen prompt order."""
        latest: dict[str, ImageEvaluation] = {}
        for evaluation in self.evaluations:
            latest[evaluation.prompt_id] = evaluation
        return list(latest.values())


class AutoplayState(BaseModel):
    """Authoritative record of one autoplay run."""

    status: AutoplayStatus = AutoplayStatus.IDLE
    config: AutoplayConfig = Field(default_factory=AutoplayConfig)
    current_iteration: int = 0
    iterations: list[AutoplayIteration] = Field(default_factory=list)
    total_saved: int = 0
    error: str | None = None
    abort_requested: bool = False
    completion_reason: CompletionReason | None = None

    @property
    def is_running(self) -> bool:
        return self.status in RUNNING_STATUSES

    @property
    def current(self) -> AutoplayIteration | None:
        """The iteration matching current_iteration, if open."""
        if not self.iterations:
            return None
        last = self.iterations[-1]
        return last if last.iteration_number == self.current_iteration else None


# =============================================================================
# Multi-phase runs
# =============================================================================


class AutoplayPhase(str, Enum):
    """Phase of a multi-phase run."""

    IDLE = "idle"
    SKETCH = "sketch"
    GAMEPLAY = "gameplay"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def output_mode(self) -> OutputMode | None:
        """Output mode the phase generates in, None outside image phases."""
        if self == AutoplayPhase.SKETCH:
            return OutputMode.SKETCH
        if self == AutoplayPhase.GAMEPLAY:
            return OutputMode.GAMEPLAY
        return None


class PhaseProgress(BaseModel):
    saved: int = 0
    target: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.target - self.saved)


class MultiPhaseState(BaseModel):
    """Record of a multi-phase run; progress survives errors for retry."""

    phase: AutoplayPhase = AutoplayPhase.IDLE
    config: MultiPhaseConfig = Field(default_factory=MultiPhaseConfig)
    sketch_progress: PhaseProgress = Field(default_factory=PhaseProgress)
    gameplay_progress: PhaseProgress = Field(default_factory=PhaseProgress)
    runs: int = 0
    aborted: bool = False
    error: str | None = None
    error_phase: AutoplayPhase | None = None

    @property
    def is_running(self) -> bool:
        return self.phase in (AutoplayPhase.SKETCH, AutoplayPhase.GAMEPLAY)

    @property
    def total_saved(self) -> int:
        return self.sketch_progress.saved + self.gameplay_progress.saved

    @property
    def target_saved(self) -> int:
        return self.config.target_count

    def progress_for(self, phase: AutoplayPhase) -> PhaseProgress:
        if phase == AutoplayPhase.SKETCH:
            return self.sketch_progress
        return self.gameplay_progress

    @property
    def completion_reason(self) -> CompletionReason | None:
        if self.phase == AutoplayPhase.ERROR:
            return CompletionReason.ERROR
        if self.phase != AutoplayPhase.COMPLETE:
            return None
        if self.aborted:
            return CompletionReason.ABORTED
        if self.total_saved >= self.target_saved:
            return CompletionReason.TARGET_MET
        return CompletionReason.MAX_ITERATIONS
