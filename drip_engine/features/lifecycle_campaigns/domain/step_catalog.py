"""
Static step catalog for the lifecycle campaigns.

Each segment owns an ordered list of steps. Ordinals are explicit and
contiguous; "the next step" is always the following ordinal, never a
number parsed out of a label.
"""

from drip_engine.features.lifecycle_campaigns.domain.models import Segment, StepDefinition


def _step(
    segment: Segment,
    ordinal: int,
    label: str,
    delay_hours: float,
    *,
    subject: str,
    preview_text: str,
    cta_text: str,
    cta_path: str,
    objective: str,
) -> StepDefinition:
    return StepDefinition(
        segment=segment,
        ordinal=ordinal,
        label=label,
        delay_hours=delay_hours,
        template_id=label,
        params={
            "subject": subject,
            "preview_text": preview_text,
            "cta_text": cta_text,
            "cta_path": cta_path,
            "objective": objective,
        },
    )


NOT_INTEGRATED_STEPS: tuple[StepDefinition, ...] = (
    _step(
        Segment.NOT_INTEGRATED,
        1,
        "analysis_waiting",
        0.08,  # ~5 minutes after signup
        subject="Your running analysis is waiting",
        preview_text="Connect Strava to see your Coach Grade",
        cta_text="Connect Strava",
        cta_path="/auth?tab=signup&connect=strava&source=analysis_waiting",
        objective="strava_connected",
    ),
    _step(
        Segment.NOT_INTEGRATED,
        2,
        "connect_nudge",
        48,
        subject="30 seconds to unlock your running insights",
        preview_text="Connect Strava and see what you've been missing",
        cta_text="Connect Strava (30 seconds)",
        cta_path="/auth?tab=signup&connect=strava&source=connect_nudge",
        objective="strava_connected",
    ),
)

ACTIVE_TRIAL_STEPS: tuple[StepDefinition, ...] = (
    _step(
        Segment.ACTIVE_TRIAL,
        1,
        "coach_grade_ready",
        1,
        subject="Your Coach Grade is ready",
        preview_text="See how your recent runs stack up",
        cta_text="View My Coach Grade",
        cta_path="/dashboard?source=coach_grade_ready",
        objective="snapshot_viewed",
    ),
    _step(
        Segment.ACTIVE_TRIAL,
        2,
        "daily_recommendation",
        23,  # next morning
        subject="Your personalized running recommendation",
        preview_text="Based on your recent activity",
        cta_text="See Today's Recommendation",
        cta_path="/dashboard?source=daily_recommendation",
        objective="snapshot_viewed",
    ),
    _step(
        Segment.ACTIVE_TRIAL,
        3,
        "run_story",
        48,
        subject="Your last run in 30 seconds",
        preview_text="See the story of your recent run",
        cta_text="View Run Story",
        cta_path="/activities?source=run_story",
        objective="activity_story_viewed",
    ),
    _step(
        Segment.ACTIVE_TRIAL,
        4,
        "ask_coach",
        48,
        subject="Ask your AI Coach anything",
        preview_text="Get a personalized answer about your training",
        cta_text="Ask the Coach",
        cta_path="/chat?source=ask_coach",
        objective="coach_question_asked",
    ),
    _step(
        Segment.ACTIVE_TRIAL,
        5,
        "week_in_review",
        48,
        subject="Your Week in Review is ready",
        preview_text="See your training trends and progress",
        cta_text="View Weekly Review",
        cta_path="/dashboard?source=week_in_review",
        objective="weekly_review_viewed",
    ),
    _step(
        Segment.ACTIVE_TRIAL,
        6,
        "compare_runs",
        72,
        subject="Compare your runs side-by-side",
        preview_text="See how you're progressing",
        cta_text="Compare Runs",
        cta_path="/activities?compare=true&source=compare_runs",
        objective="compare_opened",
    ),
    _step(
        Segment.ACTIVE_TRIAL,
        7,
        "upgrade_offer",
        96,
        subject="Unlock unlimited coaching and insights",
        preview_text="Get the most out of your training data",
        cta_text="See Pro Features",
        cta_path="/pricing?source=upgrade_offer",
        objective="upgrade_click",
    ),
)

LAPSED_STEPS: tuple[StepDefinition, ...] = (
    _step(
        Segment.LAPSED,
        1,
        "whats_changed",
        0,  # as soon as the user is classified as lapsed
        subject="See what changed since your last run",
        preview_text="Your running insights are waiting",
        cta_text="View My Dashboard",
        cta_path="/dashboard?source=whats_changed",
        objective="snapshot_viewed",
    ),
    _step(
        Segment.LAPSED,
        2,
        "week_plan_ready",
        72,
        subject="Your new week plan is ready",
        preview_text="Get back on track with personalized recommendations",
        cta_text="See This Week's Plan",
        cta_path="/dashboard?source=week_plan_ready",
        objective="snapshot_viewed",
    ),
)

SEGMENT_STEPS: dict[Segment, tuple[StepDefinition, ...]] = {
    Segment.NOT_INTEGRATED: NOT_INTEGRATED_STEPS,
    Segment.ACTIVE_TRIAL: ACTIVE_TRIAL_STEPS,
    Segment.LAPSED: LAPSED_STEPS,
}


class StepCatalogError(ValueError):
    """Raised when the static catalog is inconsistent."""


def validate_catalog(catalog: dict[Segment, tuple[StepDefinition, ...]]) -> None:
    """Ordinals contiguous from 1, labels unique per segment, delays non-negative."""
    for segment, steps in catalog.items():
        if not steps:
            raise StepCatalogError(f"Segment {segment.value} has no steps")

        labels = [step.label for step in steps]
        if len(set(labels)) != len(labels):
            raise StepCatalogError(f"Duplicate step labels in {segment.value}: {labels}")

        for expected, step in enumerate(steps, start=1):
            if step.segment is not segment:
                raise StepCatalogError(f"Step {step.label} is filed under the wrong segment")
            if step.ordinal != expected:
                raise StepCatalogError(
                    f"Step {step.label} has ordinal {step.ordinal}, expected {expected}"
                )
            if step.delay_hours < 0:
                raise StepCatalogError(f"Step {step.label} has a negative delay")


validate_catalog(SEGMENT_STEPS)


def steps_for(segment: Segment) -> tuple[StepDefinition, ...]:
    return SEGMENT_STEPS.get(segment, ())


def get_step(segment: Segment, label: str | None) -> StepDefinition | None:
    for step in steps_for(segment):
        if step.label == label:
            return step
    return None


def next_step(step: StepDefinition) -> StepDefinition | None:
    """Advance one position in the segment's ordered list."""
    steps = steps_for(step.segment)
    # ordinals are 1-based and contiguous, so the next one sits at index == ordinal
    if step.ordinal < len(steps):
        return steps[step.ordinal]
    return None


def step_dedupe_key(user_id: str, segment: Segment, label: str) -> str:
    return f"{user_id}:{segment.value}:{label}"


def one_shot_dedupe_key(user_id: str, kind: str, entity_id: str | int) -> str:
    return f"{user_id}:{kind}:{entity_id}"
