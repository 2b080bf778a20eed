"""
Threat Classification

Batched AI classification of filtered content with a deterministic keyword
heuristic as fallback for chunks the AI could not classify.
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError, field_validator

from threat_scraper.core.base import (
    ClassificationError,
    ClassificationMalformed,
    ClassificationOk,
    ClassificationOutcome,
    ClassifierGateway,
    CyberEventType,
    FilteredContentItem,
    ProcessedArticle,
)
from threat_scraper.core.logging import get_logger
from threat_scraper.utils.url import site_name


AI_CONFIDENCE_SCORE = 0.8
AI_RELEVANCE_SCORE = 0.7

# Event types the model may answer with beyond the canonical six
EVENT_TYPE_ALIASES = {
    'RANSOMWARE_ATTACK': CyberEventType.MALWARE_CAMPAIGN,
    'PHISHING_CAMPAIGN': CyberEventType.CYBER_ATTACK,
    'APT_ACTIVITY': CyberEventType.CYBER_ATTACK,
    'SUPPLY_CHAIN_ATTACK': CyberEventType.CYBER_ATTACK,
    'ZERO_DAY_EXPLOIT': CyberEventType.VULNERABILITY_DISCLOSURE,
    'SECURITY_INCIDENT': CyberEventType.INCIDENT_RESPONSE,
    'INSIDER_THREAT': CyberEventType.DATA_BREACH,
}

DEFAULT_THREAT_KEYWORDS: Dict[CyberEventType, List[str]] = {
    CyberEventType.CYBER_ATTACK: [
        'attack', 'ddos', 'phishing', 'hacker', 'hacked', 'compromise', 'intrusion',
        'apt', 'threat actor', 'exploit', 'espionage',
    ],
    CyberEventType.DATA_BREACH: [
        'breach', 'leak', 'exposed', 'stolen data', 'exfiltrat', 'personal data',
        'credentials', 'records',
    ],
    CyberEventType.MALWARE_CAMPAIGN: [
        'malware', 'ransomware', 'trojan', 'botnet', 'backdoor', 'spyware',
        'infostealer', 'worm', 'loader',
    ],
    CyberEventType.VULNERABILITY_DISCLOSURE: [
        'vulnerability', 'cve', 'zero-day', 'zero day', 'patch', 'flaw',
        'security update', 'advisory', 'rce',
    ],
    CyberEventType.INCIDENT_RESPONSE: [
        'incident', 'forensic', 'investigation', 'takedown', 'arrest',
        'remediation', 'response team', 'cisa',
    ],
}


class ThreatAnalysis(BaseModel):
    """One element of the AI response array"""
    model_config = ConfigDict(extra='ignore')

    index: int
    cybersecurity_relevant: bool = False
    title: Optional[str] = None
    summary: Optional[str] = None
    risk_score: int = 5
    event_type: CyberEventType = CyberEventType.UNKNOWN
    threat_actors: List[str] = []
    victims: List[str] = []
    victim_country: str = "Unknown"
    impact: str = "medium"
    attack_vectors: List[str] = []
    indicators: List[str] = []
    vulnerabilities: List[str] = []
    key_findings: List[str] = []
    recommendations: List[str] = []

    @field_validator('risk_score', mode='before')
    @classmethod
    def _clamp_risk(cls, value):
        try:
            score = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return 5
        return min(10, max(0, score))

    @field_validator('event_type', mode='before')
    @classmethod
    def _map_event_type(cls, value):
        name = str(value or '').strip().upper()
        if name in EVENT_TYPE_ALIASES:
            return EVENT_TYPE_ALIASES[name]
        try:
            return CyberEventType(name)
        except ValueError:
            return CyberEventType.UNKNOWN

    @field_validator('impact', mode='before')
    @classmethod
    def _normalize_impact(cls, value):
        impact = str(value or '').strip().lower()
        return impact if impact in ('high', 'medium', 'low') else 'medium'

    @field_validator('victim_country', mode='before')
    @classmethod
    def _default_country(cls, value):
        return str(value).strip() if value else "Unknown"

    @field_validator(
        'threat_actors', 'victims', 'attack_vectors', 'indicators',
        'vulnerabilities', 'key_findings', 'recommendations', mode='before',
    )
    @classmethod
    def _as_list(cls, value):
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            value = [value]
        return [str(v).strip() for v in value if v is not None and str(v).strip()]


_analysis_list = TypeAdapter(List[ThreatAnalysis])


def parse_classification_response(raw_text: str, batch: Sequence[FilteredContentItem]) -> ClassificationOutcome:
    """
    Map an AI response to articles for ``batch``.

    The response must contain a JSON array of ThreatAnalysis objects whose
    indices address the batch. Items marked not relevant, or missing from the
    array, produce no article. Anything unparseable is Malformed.
    """
    match = re.search(r'\[.*\]', raw_text or '', re.DOTALL)
    if not match:
        return ClassificationMalformed(raw_text=raw_text or '', reason="No JSON array found in AI response")

    try:
        analyses = _analysis_list.validate_json(match.group(0))
    except ValidationError as e:
        return ClassificationMalformed(raw_text=raw_text, reason=f"Invalid AI response: {e.error_count()} errors")

    seen = set()
    for analysis in analyses:
        if not 0 <= analysis.index < len(batch):
            return ClassificationMalformed(raw_text=raw_text, reason=f"Index out of range: {analysis.index}")
        if analysis.index in seen:
            return ClassificationMalformed(raw_text=raw_text, reason=f"Duplicate index: {analysis.index}")
        seen.add(analysis.index)

    articles = [
        _article_from_analysis(batch[analysis.index], analysis)
        for analysis in analyses
        if analysis.cybersecurity_relevant
    ]
    return ClassificationOk(articles=articles)


def _article_from_analysis(item: FilteredContentItem, analysis: ThreatAnalysis) -> ProcessedArticle:
    summary = analysis.summary or 'No summary available'
    return ProcessedArticle.from_item(
        item,
        article_title=analysis.title or item.title,
        summary=summary,
        risk_score=analysis.risk_score,
        event_type=analysis.event_type,
        attacker=analysis.threat_actors[0] if analysis.threat_actors else "Unknown",
        victim=analysis.victims[0] if analysis.victims else "Unknown",
        victim_country=analysis.victim_country,
        vulnerabilities=tuple(analysis.vulnerabilities),
        keywords=tuple(analysis.key_findings),
        cybersecurity_topics=tuple(analysis.attack_vectors),
        impact=analysis.impact,
        site=site_name(item.source_url or item.source_page or item.url),
        confidence_score=AI_CONFIDENCE_SCORE,
        relevance_score=AI_RELEVANCE_SCORE,
    )


class ThreatKeywordHeuristic:
    """
    Keyword-based threat classifier used when AI classification fails.

    Scores each event type by keyword coverage and frequency and picks the
    best match.
    """

    def __init__(self, event_keywords: Optional[Dict[CyberEventType, List[str]]] = None):
        self.event_keywords = self._normalize_keywords(event_keywords or DEFAULT_THREAT_KEYWORDS)
        self.logger = get_logger()

    def _normalize_keywords(self, event_keywords: Dict[CyberEventType, List[str]]) -> Dict[CyberEventType, List[str]]:
        normalized = {}
        for event_type, keywords in event_keywords.items():
            unique = []
            for keyword in keywords:
                keyword = keyword.lower().strip()
                if keyword and keyword not in unique:
                    unique.append(keyword)
            normalized[event_type] = unique
        return normalized

    def _preprocess_content(self, content: str) -> str:
        if not content:
            return ""
        content = content.lower()
        content = re.sub(r'[^\w\s-]', ' ', content)
        return re.sub(r'\s+', ' ', content).strip()

    def _calculate_keyword_matches(self, content: str, keywords: List[str]) -> Dict[str, int]:
        matches = {}
        for keyword in keywords:
            # Prefix match on word boundaries ("exploit" matches "exploited")
            pattern = r'\b' + re.escape(keyword) + r'\w*'
            count = len(re.findall(pattern, content))
            if count > 0:
                matches[keyword] = count
        return matches

    def _calculate_event_score(self, content: str, keywords: List[str]) -> float:
        if not content or not keywords:
            return 0.0

        matches = self._calculate_keyword_matches(content, keywords)
        if not matches:
            return 0.0

        coverage_score = len(matches) / len(keywords)
        frequency_score = min(sum(matches.values()) / max(len(content.split()), 1), 1.0)
        diversity_bonus = min(len(matches) / 5, 0.2)

        return min(coverage_score * 0.5 + frequency_score * 0.4 + diversity_bonus, 1.0)

    def analyze(self, item: FilteredContentItem) -> Optional[ProcessedArticle]:
        """
        Build a fallback article for one item

        Returns:
            None when the item has neither title nor content
        """
        if not (item.title or '').strip() and not (item.content or '').strip():
            return None

        text = self._preprocess_content(f"{item.title} {item.content}")

        best_type = CyberEventType.UNKNOWN
        best_score = 0.0
        matched: Dict[str, int] = {}
        for event_type, keywords in self.event_keywords.items():
            score = self._calculate_event_score(text, keywords)
            matched.update(self._calculate_keyword_matches(text, keywords))
            if score > best_score:
                best_type, best_score = event_type, score

        keywords = tuple(sorted(matched, key=lambda k: (-matched[k], k))) or ("unclassified",)
        return ProcessedArticle.from_item(
            item,
            article_title=item.title,
            summary=(item.content or item.title)[:500],
            risk_score=5,
            event_type=best_type,
            attacker="Unknown",
            victim="Unknown",
            victim_country="Unknown",
            keywords=keywords,
            impact="medium",
            site=site_name(item.source_url or item.source_page or item.url),
            confidence_score=0.0,
            relevance_score=round(best_score, 3),
            fallback=True,
        )


@dataclass
class BatchOutcome:
    """Result of classifying one chunk"""
    batch_number: int
    total_batches: int
    items: int
    articles: List[ProcessedArticle] = field(default_factory=list)
    ai_relevant: int = 0
    used_fallback: bool = False
    reason: Optional[str] = None


class BatchClassifier:
    """
    Classifies filtered items in bounded chunks through a ClassifierGateway.

    A chunk whose AI call fails, times out or returns malformed output is
    classified by the keyword heuristic instead; other chunks are unaffected.
    """

    def __init__(self, gateway: Optional[ClassifierGateway], batch_size: int = 20, max_batches: int = 5,
                 batch_timeout: float = 120, heuristic: Optional[ThreatKeywordHeuristic] = None):
        self.gateway = gateway
        self.batch_size = batch_size
        self.max_batches = max_batches
        self.batch_timeout = batch_timeout
        self.heuristic = heuristic or ThreatKeywordHeuristic()
        self.logger = get_logger()

    def chunk(self, items: Sequence[FilteredContentItem]) -> List[List[FilteredContentItem]]:
        """Split items into chunks, capped at max_batches * batch_size items"""
        capped = list(items[:self.batch_size * self.max_batches])
        return [capped[i:i + self.batch_size] for i in range(0, len(capped), self.batch_size)]

    async def classify_batch(self, batch: List[FilteredContentItem], batch_number: int = 1,
                             total_batches: int = 1) -> BatchOutcome:
        outcome = BatchOutcome(batch_number=batch_number, total_batches=total_batches, items=len(batch))
        try:
            if self.gateway is None:
                raise ClassificationError("no classifier gateway configured")
            result = await asyncio.wait_for(self.gateway.classify(batch), self.batch_timeout)
        except asyncio.TimeoutError:
            result = None
            outcome.reason = f"AI batch timed out after {self.batch_timeout}s"
        except ClassificationError as e:
            result = None
            outcome.reason = f"AI classification failed: {e}"
        except Exception as e:
            self.logger.error(f"Unexpected classifier failure in batch {batch_number}: {e}", exc_info=True)
            result = None
            outcome.reason = f"AI classification failed unexpectedly: {type(e).__name__}: {e}"

        if isinstance(result, ClassificationMalformed):
            outcome.reason = f"Malformed AI response: {result.reason}"
        elif isinstance(result, ClassificationOk):
            outcome.articles = list(result.articles)
            outcome.ai_relevant = len(result.articles)
            return outcome

        self.logger.warning(f"Batch {batch_number}/{total_batches} using fallback: {outcome.reason}")
        outcome.used_fallback = True
        outcome.articles = self.fallback(batch)
        return outcome

    def fallback(self, batch: Sequence[FilteredContentItem]) -> List[ProcessedArticle]:
        articles = []
        for item in batch:
            article = self.heuristic.analyze(item)
            if article is not None:
                articles.append(article)
        return articles

    async def process(self, items: Sequence[FilteredContentItem],
                      should_stop: Optional[Callable[[], bool]] = None,
                      on_outcome: Optional[Callable[[BatchOutcome], None]] = None) -> List[BatchOutcome]:
        """
        Classify every chunk in order

        should_stop() is checked before each chunk; on_outcome receives each
        outcome as soon as its chunk is done.
        """
        chunks = self.chunk(items)
        outcomes = []
        for number, batch in enumerate(chunks, 1):
            if should_stop and should_stop():
                break
            outcome = await self.classify_batch(batch, number, len(chunks))
            outcomes.append(outcome)
            if on_outcome is not None:
                on_outcome(outcome)
        return outcomes
