"""Polish execution with timeout and cancellation.

``polish_with_timeout`` never raises for per-image problems; timeouts,
cancellation and service errors all come back as a failed PolishResult so
the polishing phase can move on to the next candidate.
"""

from __future__ import annotations

from atelier.autoplay.cancellation import CancellationToken
from atelier.core.errors import OperationCancelled, ServiceError
from atelier.core.logging import get_logger
from atelier.core.models import PolishRequest, PolishResult
from atelier.services.base import Polisher

_logger = get_logger("polisher")

POLISH_TIMEOUT_MESSAGE = "Polish operation timed out"
POLISH_CANCELLED_MESSAGE = "Polish cancelled"


async def polish_with_timeout(
    polisher: Polisher,
    request: PolishRequest,
    timeout_ms: int = 30_000,
    token: CancellationToken | None = None,
) -> PolishResult:
    """Run one polish call under a timeout combined with the run token.

    Args:
        polisher: Polish service.
        request: What to polish and how.
        timeout_ms: Per-call deadline.
        token: Run cancellation token; firing it aborts the call too.

    Returns:
        The service result, or a failed result on timeout, cancellation or
        service error.
    """
    parent = token or CancellationToken()
    with parent.with_timeout(timeout_ms / 1000, reason=POLISH_TIMEOUT_MESSAGE) as call_token:
        try:
            result = await call_token.run(polisher.polish(request))
        except OperationCancelled as e:
            _logger.warning(
                "polisher.cancelled",
                prompt_id=request.prompt_id,
                reason=e.reason,
            )
            error = e.reason if e.reason == POLISH_TIMEOUT_MESSAGE else POLISH_CANCELLED_MESSAGE
            return PolishResult(success=False, improved=False, error=error)
        except (ServiceError, ValueError) as e:
            _logger.warning(
                "polisher.failed",
                prompt_id=request.prompt_id,
                error=str(e),
            )
            return PolishResult(success=False, improved=False, error=str(e))

    _logger.debug(
        "polisher.completed",
        prompt_id=request.prompt_id,
        success=result.success,
        improved=result.improved,
        score_delta=result.score_delta,
    )
    return result


def accepted_improvement(
    result: PolishResult,
    original_score: int,
    min_score_improvement: int,
) -> bool:
    """Whether a polish result should replace the original image.

    The service must report an improvement, return the new image and its
    re-evaluation, and the new score must beat the original by at least
    ``min_score_improvement``.
    """
    if not (result.success and result.improved):
        return False
    if not result.polished_url or result.re_evaluation is None:
        return False
    return result.re_evaluation.score - original_score >= min_score_improvement
