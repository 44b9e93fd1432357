"""
Prompt Template Registry.

Holds the prompt variants sent to the vision model and the selection
weights the learning loop adjusts. Selection is a weighted random draw so
weaker variants keep receiving a share of traffic for A/B evaluation.

Author: ML Engineering Team
"""

import random
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional

from config import get_config
from vat_extraction.utils.logger import get_logger

# Initialize module logger
logger = get_logger(__name__)


@dataclass(frozen=True)
class PromptTemplate:
    """
    A prompt variant.

    Attributes:
        id: Stable identifier recorded on every result it produces.
        prompt: Instruction text for chat-style vision models.
        question: Short question for document-QA models.
        weight: Selection weight (relative, not normalised).
        version: Bumped whenever the weight changes.
    """
    id: str
    prompt: str
    question: str = "What is the total VAT amount?"
    weight: float = 1.0
    version: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PromptTemplate':
        return cls(
            id=str(data['id']),
            prompt=str(data.get('prompt', '')).strip(),
            question=str(data.get('question') or cls.question),
            weight=float(data.get('weight', 1.0)),
        )


class TemplateRegistry:
    """
    Thread-safe set of prompt templates with adjustable weights.

    Workers call select() while the learning loop calls adjust_weight()
    and promote(); both go through the same lock.

    Example:
        >>> registry = TemplateRegistry.from_config()
        >>> template = registry.select()
        >>> registry.adjust_weight(template.id, -0.2)
    """

    def __init__(
        self,
        templates: Iterable[PromptTemplate],
        min_weight: Optional[float] = None,
        max_weight: Optional[float] = None,
        rng: Optional[random.Random] = None
    ) -> None:
        self._lock = threading.Lock()
        self._templates: Dict[str, PromptTemplate] = {}
        self.min_weight = min_weight if min_weight is not None else get_config(
            "learning.min_weight", 0.05
        )
        self.max_weight = max_weight if max_weight is not None else get_config(
            "learning.max_weight", 5.0
        )
        self._rng = rng or random.Random()
        self._promoted: Optional[str] = None

        for template in templates:
            self._templates[template.id] = replace(
                template, weight=self._bounded(template.weight)
            )

        if not self._templates:
            raise ValueError("TemplateRegistry needs at least one template")

        logger.debug(f"TemplateRegistry initialized with {len(self._templates)} templates")

    @classmethod
    def from_config(cls, **kwargs: Any) -> 'TemplateRegistry':
        """Build the registry from vision.templates in settings.yaml."""
        entries = get_config("vision.templates", []) or []
        templates = [PromptTemplate.from_dict(entry) for entry in entries]
        if not templates:
            templates = [PromptTemplate(
                id="vat-default",
                prompt="Extract every VAT amount from this document and state the Total VAT.",
            )]
        return cls(templates, **kwargs)

    def _bounded(self, weight: float) -> float:
        return min(self.max_weight, max(self.min_weight, float(weight)))

    def select(self, rng: Optional[random.Random] = None) -> PromptTemplate:
        """Draw a template with probability proportional to its weight."""
        with self._lock:
            templates = list(self._templates.values())
            weights = [t.weight for t in templates]
            chooser = rng or self._rng
            return chooser.choices(templates, weights=weights, k=1)[0]

    def get(self, template_id: str) -> Optional[PromptTemplate]:
        with self._lock:
            return self._templates.get(template_id)

    def adjust_weight(self, template_id: str, delta: float) -> Optional[PromptTemplate]:
        """
        Change a template's weight by delta, bounded to [min_weight, max_weight].

        Returns:
            The updated template, or None for an unknown id.
        """
        with self._lock:
            template = self._templates.get(template_id)
            if template is None:
                logger.warning(f"Weight update for unknown template '{template_id}'")
                return None
            updated = replace(
                template,
                weight=self._bounded(template.weight + delta),
                version=template.version + 1,
            )
            self._templates[template_id] = updated

        logger.debug(
            f"Template '{template_id}' weight {template.weight:.3f} -> {updated.weight:.3f}"
        )
        return updated

    def promote(self, template_id: str) -> Optional[PromptTemplate]:
        """
        Make a template the leader: its weight becomes the current maximum
        of all templates plus one, bounded by max_weight.
        """
        with self._lock:
            template = self._templates.get(template_id)
            if template is None:
                return None
            top = max(t.weight for t in self._templates.values())
            updated = replace(
                template,
                weight=self._bounded(top + 1.0),
                version=template.version + 1,
            )
            self._templates[template_id] = updated
            self._promoted = template_id

        logger.info(f"Promoted template '{template_id}' (weight={updated.weight:.2f})")
        return updated

    @property
    def promoted(self) -> Optional[str]:
        with self._lock:
            return self._promoted

    def leader(self) -> PromptTemplate:
        """Template with the highest weight."""
        with self._lock:
            return max(self._templates.values(), key=lambda t: t.weight)

    def weights(self) -> Dict[str, float]:
        with self._lock:
            return {t.id: t.weight for t in self._templates.values()}

    def all(self) -> List[PromptTemplate]:
        with self._lock:
            return list(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)
