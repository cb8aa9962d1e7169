"""
Request classification.

Maps a request to its accuracy class: level 1 for health-critical analysis
and any emergency, level 2 for everything else.
"""

from __future__ import annotations

from routewise.core.models import RequestContext, RequestType, TaskLevel

LEVEL1_REQUEST_TYPES = frozenset({
    RequestType.HEALTH_REPORT_ANALYSIS.value,
    RequestType.HEALTH_CONSULTATION.value,
    RequestType.SYMPTOM_ANALYSIS.value,
    RequestType.MEDICATION_INTERACTION.value,
    RequestType.EMERGENCY_ASSESSMENT.value,
})


class RequestClassifier:
    """
    Example:
        classifier = RequestClassifier()
        classifier.classify(RequestContext(user_id="u1", request_type="symptom_analysis"))
        # TaskLevel.LEVEL1
    """

    def __init__(self, level1_types: frozenset[str] | set[str] | None = None):
        self.level1_types = frozenset(level1_types) if level1_types is not None else LEVEL1_REQUEST_TYPES

    def classify(self, context: RequestContext) -> TaskLevel:
        if context.emergency or context.request_type in self.level1_types:
            return TaskLevel.LEVEL1
        return TaskLevel.LEVEL2
