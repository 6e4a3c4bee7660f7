"""
Enumerations shared across the issue assembly pipeline.

Values are the strings stored in the database columns of the same name.
"""

from enum import Enum


class IssueStatus(str, Enum):
    PROCESSING = 'processing'
    DRAFT = 'draft'
    IN_REVIEW = 'in_review'
    SENT = 'sent'
    FAILED = 'failed'


# Statuses that still occupy the (publication, date) slot
OPEN_ISSUE_STATUSES = (
    IssueStatus.PROCESSING.value,
    IssueStatus.DRAFT.value,
    IssueStatus.IN_REVIEW.value,
)


class WorkflowState(str, Enum):
    NOT_STARTED = 'not_started'
    CLEANING_UP = 'cleaning_up'
    DEDUPLICATING = 'deduplicating'
    SELECTING_MODULES = 'selecting_modules'
    GENERATING_TITLES = 'generating_titles'
    GENERATING_BODIES_BATCH1 = 'generating_bodies_batch1'
    GENERATING_BODIES_BATCH2 = 'generating_bodies_batch2'
    FACT_CHECKING = 'fact_checking'
    FINALIZING = 'finalizing'
    DRAFT = 'draft'
    FAILED = 'failed'


# States repeated once per active module, in this order
MODULE_STATES = (
    WorkflowState.SELECTING_MODULES,
    WorkflowState.GENERATING_TITLES,
    WorkflowState.GENERATING_BODIES_BATCH1,
    WorkflowState.GENERATING_BODIES_BATCH2,
    WorkflowState.FACT_CHECKING,
)


class ModuleType(str, Enum):
    ARTICLE = 'article'
    PROMPT = 'prompt'
    AD = 'ad'
    AI_APP = 'ai_app'
    PARTNER_REC = 'partner_rec'


# Families whose candidates are used up once assigned to any issue
CONSUMABLE_MODULE_TYPES = (ModuleType.ARTICLE.value,)

# Families that get AI-written headline/body/fact-check
GENERATED_MODULE_TYPES = (ModuleType.ARTICLE.value,)


class SelectionMode(str, Enum):
    SEQUENTIAL = 'sequential'
    RANDOM = 'random'
    SCORE_BASED = 'score_based'
    PRIORITY = 'priority'
    MANUAL = 'manual'

    @classmethod
    def parse(cls, value: str) -> 'SelectionMode':
        """Parse a stored selection_mode value ('top_score' is a legacy alias)"""
        if value == 'top_score':
            return cls.SCORE_BASED
        return cls(value)
