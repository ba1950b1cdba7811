# SQLAlchemy models
from .base import Base
from .jobs import (
    LearningArtifact,
    SagaAction,
    SagaRun,
    StructuralDecisionTrace,
)
from .learning import (
    Activity,
    ActivityCitation,
    ActivityConcept,
    ActivityVariant,
    Concept,
    ConceptEdge,
    ConceptEvidence,
    Path,
    PathNode,
    PathNodeActivity,
    PathStructuralUnit,
    UserConceptState,
    UserMisconceptionInstance,
    UserProfile,
)
from .materials import (
    MaterialChunk,
    MaterialFile,
    MaterialFileSignature,
    MaterialSet,
)

__all__ = [
    # Base
    "Base",
    # Materials
    "MaterialSet",
    "MaterialFile",
    "MaterialChunk",
    "MaterialFileSignature",
    # Learning
    "Path",
    "PathNode",
    "Concept",
    "ConceptEvidence",
    "ConceptEdge",
    "Activity",
    "ActivityVariant",
    "ActivityConcept",
    "ActivityCitation",
    "PathNodeActivity",
    "UserProfile",
    "UserConceptState",
    "UserMisconceptionInstance",
    "PathStructuralUnit",
    # Jobs
    "LearningArtifact",
    "SagaRun",
    "SagaAction",
    "StructuralDecisionTrace",
]
