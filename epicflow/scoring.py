"""
Capability Scorer - Agent/Task Fit Scoring

Pure computation: score(agent, task) -> ScoreBreakdown.

Five factors, each computed on a raw 0-100 scale and multiplied by its
weight (default maxima 40/20/20/10/10):
- capability_match: fuzzy coverage of required/preferred skills, languages, frameworks
- performance_history: success rate and volume, derated by task complexity
- availability: spare capacity and health, scaled by activity status
- specialization: agent type and domain fit
- experience: prior work on the same epic and in the same domains

Skill strings match fuzzily: equal after normalization, one containing the
other, or linked through the synonym table directly or via one shared entry.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import ConfigurationError
from .models import AgentAvailability, AgentProfile, Task, TaskComplexity

logger = logging.getLogger("capability_scorer")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
FACTORS: Tuple[str, ...] = (
    "capability_match",
    "performance_history",
    "availability",
    "specialization",
    "experience",
)

DEFAULT_WEIGHTS: Dict[str, float] = {
    "capability_match": 0.4,
    "performance_history": 0.2,
    "availability": 0.2,
    "specialization": 0.1,
    "experience": 0.1,
}

PRESET_WEIGHTS: Dict[str, Dict[str, float]] = {
    "capability_focused": {
        "capability_match": 0.5,
        "performance_history": 0.15,
        "availability": 0.15,
        "specialization": 0.1,
        "experience": 0.1,
    },
    "availability_focused": {
        "capability_match": 0.3,
        "performance_history": 0.15,
        "availability": 0.35,
        "specialization": 0.1,
        "experience": 0.1,
    },
    "performance_focused": {
        "capability_match": 0.3,
        "performance_history": 0.35,
        "availability": 0.15,
        "specialization": 0.1,
        "experience": 0.1,
    },
}

WEIGHT_TOLERANCE = 0.01
DEFAULT_MIN_THRESHOLD = 50.0

DEFAULT_SKILL_SYNONYMS: Dict[str, List[str]] = {
    # Languages
    "typescript": ["ts", "tsx"],
    "javascript": ["js", "jsx", "node", "nodejs"],
    "python": ["py", "python3"],
    "rust": ["rs"],
    "go": ["golang"],
    # Core skills
    "codegeneration": ["coding", "development", "programming", "implementation"],
    "testing": ["qa", "test", "unit-testing", "integration-testing"],
    "debugging": ["bug-fixing", "troubleshooting", "error-handling"],
    "codereview": ["review", "code-quality", "peer-review"],
    "documentation": ["docs", "readme", "api-docs"],
    "refactoring": ["code-improvement", "optimization", "cleanup"],
    # Frameworks
    "react": ["reactjs", "react-native"],
    "express": ["expressjs"],
    "fastapi": ["fast-api"],
    "django": ["python-django"],
    "pytest": ["py-test"],
    # Domains
    "backend": ["server-side", "api", "backend-dev"],
    "frontend": ["client-side", "ui", "frontend-dev"],
    "fullstack": ["full-stack", "fullstack-dev"],
    "devops": ["infrastructure", "deployment", "ci-cd"],
    "ml": ["machine-learning", "ai", "data-science"],
}

AGENT_TYPE_LABELS: Dict[str, List[str]] = {
    "coder": ["feature", "implementation", "development", "coding", "build"],
    "tester": ["bug", "testing", "qa", "test", "quality"],
    "reviewer": ["code-review", "review", "security", "quality", "audit"],
    "researcher": ["research", "investigation", "analysis", "study", "explore"],
    "architect": ["architecture", "design", "system", "planning", "structure"],
    "devops": ["deployment", "infrastructure", "ci-cd", "pipeline", "ops"],
}

COMPLEXITY_DERATE: Dict[TaskComplexity, float] = {
    TaskComplexity.LOW: 1.0,
    TaskComplexity.MEDIUM: 0.95,
    TaskComplexity.HIGH: 0.9,
    TaskComplexity.CRITICAL: 0.85,
}

FACTOR_LABELS: Dict[str, str] = {
    "capability_match": "capability match",
    "performance_history": "performance history",
    "availability": "availability",
    "specialization": "specialization",
    "experience": "epic experience",
}

NO_REQUIREMENTS_CAPABILITY = 70.0
NO_HISTORY_PERFORMANCE = 70.0
GENERALIST_SPECIALIZATION = 50.0


def normalize_skill(skill: str) -> str:
    return " ".join(skill.lower().split())


def validate_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    """Check weight names, ranges and total; return a plain dict copy."""
    unknown = set(weights) - set(FACTORS)
    if unknown:
        raise ConfigurationError("weights", f"unknown factors: {sorted(unknown)}")
    missing = set(FACTORS) - set(weights)
    if missing:
        raise ConfigurationError("weights", f"missing factors: {sorted(missing)}")

    for name in FACTORS:
        value = weights[name]
        if value < 0 or value > 1:
            raise ConfigurationError(f"weights.{name}", f"must be between 0 and 1, got {value}")

    total = sum(weights[name] for name in FACTORS)
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ConfigurationError("weights", f"must sum to 1.0 (+/- {WEIGHT_TOLERANCE}), got {total:.3f}")
    return {name: float(weights[name]) for name in FACTORS}


# -----------------------------------------------------------------------------
# Result
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ScoreBreakdown:
    """
    Weighted factor scores for one agent against one task.

    Component values are already weighted; total_score is their clamped sum.
    """
    agent_id: str
    task_id: str
    capability_match: float
    performance_history: float
    availability: float
    specialization: float
    experience: float
    total_score: float
    confidence: float
    match_reason: str
    meets_threshold: bool
    missing_capabilities: Tuple[str, ...] = ()
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    def __post_init__(self):
        if not 0 <= self.total_score <= 100:
            raise ValueError(f"total_score must be 0-100, got {self.total_score}")
        if not 0 <= self.confidence <= 1:
            raise ValueError(f"confidence must be 0-1, got {self.confidence}")

    def components(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in FACTORS}

    def factor_percentages(self) -> Dict[str, float]:
        """Each component as a percentage of its own maximum."""
        result = {}
        for name in FACTORS:
            weight = self.weights.get(name, 0)
            result[name] = getattr(self, name) / weight if weight > 0 else 0.0
        return result

    def to_dict(self) -> Dict:
        return {
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            **{name: round(value, 2) for name, value in self.components().items()},
            "total_score": round(self.total_score, 2),
            "confidence": round(self.confidence, 3),
            "match_reason": self.match_reason,
            "meets_threshold": self.meets_threshold,
            "missing_capabilities": list(self.missing_capabilities),
            "weights": dict(self.weights),
        }


# -----------------------------------------------------------------------------
# Scorer
# -----------------------------------------------------------------------------

class CapabilityScorer:
    """
    Scores agents against task requirements.

    Stateless apart from its weights, threshold and synonym table.
    """

    def __init__(
        self,
        weights: Optional[Mapping[str, float]] = None,
        min_threshold: float = DEFAULT_MIN_THRESHOLD,
        synonyms: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self._weights = validate_weights(dict(weights) if weights is not None else DEFAULT_WEIGHTS)
        if not 0 <= min_threshold <= 100:
            raise ConfigurationError("min_threshold", f"must be between 0 and 100, got {min_threshold}")
        self.min_threshold = float(min_threshold)

        self._synonyms: Dict[str, Set[str]] = {}
        for skill, alternatives in DEFAULT_SKILL_SYNONYMS.items():
            self.add_skill_synonyms(skill, alternatives)
        if synonyms:
            for skill, alternatives in synonyms.items():
                self.add_skill_synonyms(skill, alternatives)

    @property
    def weights(self) -> Dict[str, float]:
        return dict(self._weights)

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def update_weights(self, weights: Mapping[str, float]) -> None:
        """Merge new weights over the current ones; the result must sum to 1.0."""
        merged = {**self._weights, **weights}
        self._weights = validate_weights(merged)
        logger.info(f"Scoring weights updated: {self._weights}")

    def add_skill_synonyms(self, skill: str, synonyms: Iterable[str]) -> None:
        group = {normalize_skill(skill)} | {normalize_skill(s) for s in synonyms}
        group.discard("")
        for member in group:
            self._synonyms.setdefault(member, set()).update(group - {member})

    def synonyms_for(self, skill: str) -> Set[str]:
        return set(self._synonyms.get(normalize_skill(skill), set()))

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    def fuzzy_match(self, first: str, second: str) -> bool:
        s1 = normalize_skill(first)
        s2 = normalize_skill(second)
        if not s1 or not s2:
            return False
        if s1 == s2 or s1 in s2 or s2 in s1:
            return True

        syn1 = self._synonyms.get(s1, set())
        syn2 = self._synonyms.get(s2, set())
        if s2 in syn1 or s1 in syn2:
            return True
        return bool(syn1 & syn2)

    def _matches_any(self, skill: str, offered: Iterable[str]) -> bool:
        return any(self.fuzzy_match(skill, other) for other in offered)

    def _coverage(self, requested: List[str], offered: List[str]) -> Optional[float]:
        """Fraction of requested skills matched, or None if nothing was requested."""
        if not requested:
            return None
        matched = sum(1 for skill in requested if self._matches_any(skill, offered))
        return matched / len(requested)

    def missing_capabilities(self, agent: AgentProfile, task: Task) -> List[str]:
        offered = agent.capabilities.all_skills()
        return [skill for skill in task.required_capabilities if not self._matches_any(skill, offered)]

    # -------------------------------------------------------------------------
    # Raw factors (0-100)
    # -------------------------------------------------------------------------

    def _capability_raw(self, agent: AgentProfile, task: Task) -> float:
        if not task.required_capabilities:
            return NO_REQUIREMENTS_CAPABILITY

        caps = agent.capabilities
        offered = caps.all_skills()
        terms = [
            (0.6, self._coverage(task.required_capabilities, offered)),
            (0.2, self._coverage(task.preferred_capabilities, offered)),
            (0.1, self._coverage(task.languages, caps.languages)),
            (0.1, self._coverage(task.frameworks, caps.frameworks)),
        ]
        # Terms the task did not request drop out and the rest are renormalized
        present = [(weight, value) for weight, value in terms if value is not None]
        weight_sum = sum(weight for weight, _ in present)
        return 100 * sum(weight * value for weight, value in present) / weight_sum

    def _performance_raw(self, agent: AgentProfile, task: Task) -> float:
        perf = agent.performance
        if not perf.has_history:
            return NO_HISTORY_PERFORMANCE
        volume_bonus = min(0.2, perf.tasks_completed / 100)
        derate = COMPLEXITY_DERATE.get(task.complexity, 1.0)
        return min(100.0, (perf.success_rate + volume_bonus) * perf.health * derate * 100)

    @staticmethod
    def _status_multiplier(agent: AgentProfile) -> float:
        if agent.availability == AgentAvailability.OFFLINE:
            return 0.0
        if agent.availability == AgentAvailability.BUSY:
            return 0.4
        return 1.0 if agent.current_load == 0 else 0.8

    def _availability_raw(self, agent: AgentProfile) -> float:
        base = 0.6 * (1 - agent.workload_factor) + 0.3 * agent.performance.health
        return max(0.0, base * self._status_multiplier(agent) * 100)

    def _specialization_raw(self, agent: AgentProfile, task: Task) -> float:
        type_labels = AGENT_TYPE_LABELS.get(normalize_skill(agent.agent_type), [])
        agent_domains = agent.capabilities.domains
        if not type_labels and not agent_domains:
            return GENERALIST_SPECIALIZATION

        raw = 0.0
        if any(self._matches_any(label, type_labels) for label in task.labels):
            raw += 50
        if any(self._matches_any(domain, agent_domains) for domain in task.domains):
            raw += 50
        return raw

    def _experience_raw(self, agent: AgentProfile, task: Task) -> float:
        epic_tasks = agent.epic_experience.get(task.epic_id, 0)
        domain_ratio = self._coverage(task.domains, agent.capabilities.domains) or 0.0
        return (0.6 * min(1.0, epic_tasks / 5) + 0.4 * domain_ratio) * 100

    # -------------------------------------------------------------------------
    # Confidence and reasons
    # -------------------------------------------------------------------------

    @staticmethod
    def _recency(last_activity: Optional[datetime], now: datetime) -> float:
        if last_activity is None:
            return 0.4
        age = now - last_activity
        if age < timedelta(days=1):
            return 1.0
        if age < timedelta(days=7):
            return 0.7
        return 0.4

    def _confidence(
        self,
        agent: AgentProfile,
        missing: List[str],
        specialization_raw: float,
        now: datetime,
    ) -> float:
        signals = [
            min(1.0, agent.performance.tasks_completed / 20),
            max(0.0, min(1.0, agent.performance.health)),
            1.0 if not missing else 0.5,
            specialization_raw / 100,
            self._recency(agent.performance.last_activity_at, now),
        ]
        return sum(signals) / len(signals)

    @staticmethod
    def _bucket_label(total: float) -> str:
        if total >= 80:
            return "Excellent match"
        if total >= 60:
            return "Good match"
        if total >= 50:
            return "Adequate match"
        return "Below threshold"

    def _match_reason(self, total: float, raw: Dict[str, float]) -> str:
        ranked = sorted(
            (name for name in FACTORS if self._weights[name] > 0 and raw[name] > 50),
            key=lambda name: raw[name],
            reverse=True,
        )
        label = self._bucket_label(total)
        if not ranked:
            return label
        parts = [f"strong {FACTOR_LABELS[name]} ({raw[name]:.0f}%)" for name in ranked[:2]]
        return f"{label}: {'; '.join(parts)}"

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def score(self, agent: AgentProfile, task: Task, now: Optional[datetime] = None) -> ScoreBreakdown:
        """Score one agent against one task."""
        now = now or datetime.utcnow()
        raw = {
            "capability_match": self._capability_raw(agent, task),
            "performance_history": self._performance_raw(agent, task),
            "availability": self._availability_raw(agent),
            "specialization": self._specialization_raw(agent, task),
            "experience": self._experience_raw(agent, task),
        }
        weighted = {name: raw[name] * self._weights[name] for name in FACTORS}
        total = max(0.0, min(100.0, sum(weighted.values())))
        missing = self.missing_capabilities(agent, task)

        breakdown = ScoreBreakdown(
            agent_id=agent.agent_id,
            task_id=task.task_id,
            total_score=total,
            confidence=self._confidence(agent, missing, raw["specialization"], now),
            match_reason=self._match_reason(total, raw),
            meets_threshold=total >= self.min_threshold,
            missing_capabilities=tuple(missing),
            weights=dict(self._weights),
            **weighted,
        )
        logger.debug(
            f"Scored agent {agent.agent_id} for task {task.task_id}: "
            f"{breakdown.total_score:.1f} ({breakdown.match_reason})"
        )
        return breakdown

    def score_many(self, agents: Iterable[AgentProfile], task: Task, now: Optional[datetime] = None) -> List[ScoreBreakdown]:
        """Score every agent; best first, ties broken by confidence."""
        scores = [self.score(agent, task, now=now) for agent in agents]
        scores.sort(key=lambda s: (s.total_score, s.confidence), reverse=True)
        return scores

    def qualifying(self, agents: Iterable[AgentProfile], task: Task, now: Optional[datetime] = None) -> List[ScoreBreakdown]:
        return [s for s in self.score_many(agents, task, now=now) if s.meets_threshold]


# -----------------------------------------------------------------------------
# Presets
# -----------------------------------------------------------------------------

def create_capability_focused_scorer(min_threshold: float = DEFAULT_MIN_THRESHOLD) -> CapabilityScorer:
    return CapabilityScorer(PRESET_WEIGHTS["capability_focused"], min_threshold=min_threshold)


def create_availability_focused_scorer(min_threshold: float = DEFAULT_MIN_THRESHOLD) -> CapabilityScorer:
    return CapabilityScorer(PRESET_WEIGHTS["availability_focused"], min_threshold=min_threshold)


def create_performance_focused_scorer(min_threshold: float = DEFAULT_MIN_THRESHOLD) -> CapabilityScorer:
    return CapabilityScorer(PRESET_WEIGHTS["performance_focused"], min_threshold=min_threshold)
