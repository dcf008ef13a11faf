"""Email classification components.

This package provides the hybrid classifier and its collaborators:
- Processing-rules engine with the built-in rule catalog
- VIP registry with tier lookup and SLA hours
- Learning system fed by user feedback
- External AI classifier (Claude tool use) with prompt builders
- Classification engine that merges all of the above
"""

from followup.classifier.ai_classifier import (
    AIClassificationRequest,
    AIClassificationResponse,
    AIClassifier,
    AISnoozeAdvice,
)
from followup.classifier.engine import ClassificationEngine
from followup.classifier.learning import (
    DEFAULT_WEIGHTS,
    CategoryHints,
    CategorySuggestion,
    LearningData,
    LearningModel,
    LearningSystem,
)
from followup.classifier.models import (
    ClassificationFeedback,
    ClassificationResult,
    EmailContext,
    EmailRecord,
    SuggestedAction,
    parse_feedback,
)
from followup.classifier.rules_engine import DEFAULT_RULES, ProcessingRule, RuleMatch, RulesEngine
from followup.classifier.vip import VIPLookup, VIPManager, normalize_email

__all__ = [
    # AI classifier
    "AIClassificationRequest",
    "AIClassificationResponse",
    "AIClassifier",
    "AISnoozeAdvice",
    # Engine
    "ClassificationEngine",
    # Learning
    "DEFAULT_WEIGHTS",
    "CategoryHints",
    "CategorySuggestion",
    "LearningData",
    "LearningModel",
    "LearningSystem",
    # Models
    "ClassificationFeedback",
    "ClassificationResult",
    "EmailContext",
    "EmailRecord",
    "SuggestedAction",
    "parse_feedback",
    # Rules
    "DEFAULT_RULES",
    "ProcessingRule",
    "RuleMatch",
    "RulesEngine",
    # VIP
    "VIPLookup",
    "VIPManager",
    "normalize_email",
]
