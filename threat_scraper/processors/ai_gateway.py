"""
OpenAI-backed classifier gateway

Sends one chunk of filtered items to a chat completion model (OpenAI or
Azure OpenAI) and maps the JSON answer to ProcessedArticles.
"""

import json
from typing import Any, Dict, List, Optional

from openai import AsyncAzureOpenAI, AsyncOpenAI, OpenAIError

from threat_scraper.core.base import (
    ClassificationError,
    ClassificationOutcome,
    ClassifierGateway,
    FilteredContentItem,
)
from threat_scraper.core.config import AIConfig
from threat_scraper.core.logging import get_logger
from threat_scraper.processors.classifier import parse_classification_response


SYSTEM_PROMPT = "You are an expert cybersecurity analyst. Return only valid JSON."

PROMPT_TEMPLATE = """You are an expert cybersecurity threat intelligence analyst. Analyze the following {count} web content items and identify which ones are related to cybersecurity, information security, or cyber threats.

For each item that IS cybersecurity-related, return:
- index: the item index (0-{last_index})
- cybersecurity_relevant: true
- title: cleaned, meaningful title
- summary: 2-3 sentence summary focusing on cybersecurity aspects
- risk_score: integer 0-10 (0=informational, 10=critical threat)
- event_type: one of ["CYBER_ATTACK", "DATA_BREACH", "MALWARE_CAMPAIGN", "VULNERABILITY_DISCLOSURE", "INCIDENT_RESPONSE", "UNKNOWN"]
- threat_actors: array of threat actor names or ["Unknown"]
- victims: array of organization/sector names
- victim_country: country of the primary victim or "Unknown"
- impact: one of ["high", "medium", "low"]
- attack_vectors: array of attack methods
- indicators: array of IOCs, domains, IPs, hashes
- vulnerabilities: array of CVEs and vulnerability descriptions
- key_findings: array of important findings
- recommendations: array of security recommendations

For items that are NOT cybersecurity-related, return:
- index: the item index
- cybersecurity_relevant: false

Content items:
{items}

Return ONLY a JSON array of results, no other text."""


def build_prompt(batch: List[FilteredContentItem]) -> str:
    batch_content = [
        {
            'index': index,
            'title': (item.title or '')[:200],
            'content': (item.content or '')[:500],
            'url': item.url or '',
            'type': item.type.value,
        }
        for index, item in enumerate(batch)
    ]
    return PROMPT_TEMPLATE.format(
        count=len(batch),
        last_index=max(len(batch) - 1, 0),
        items=json.dumps(batch_content, indent=2),
    )


class OpenAIClassifierGateway(ClassifierGateway):
    """
    Chat-completion classifier gateway.

    Without an API key every call raises ClassificationError so the batch
    classifier falls back to the keyword heuristic.
    """

    def __init__(self, config: AIConfig, client: Optional[Any] = None):
        self.config = config
        self.logger = get_logger()
        self.client = client if client is not None else self._create_client()

    def _create_client(self):
        api_key = self.config.api_key
        if not api_key:
            self.logger.warning(
                f"AI classification not configured: {self.config.api_key_env} is not set"
            )
            return None

        if self.config.provider == 'azure':
            return AsyncAzureOpenAI(
                api_key=api_key,
                azure_endpoint=self.config.azure_endpoint,
                azure_deployment=self.config.azure_deployment,
                api_version=self.config.azure_api_version,
            )
        return AsyncOpenAI(api_key=api_key)

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def classify(self, batch: List[FilteredContentItem]) -> ClassificationOutcome:
        if self.client is None:
            raise ClassificationError("AI client not configured")
        if not batch:
            return parse_classification_response('[]', batch)

        model = self.config.model
        if self.config.provider == 'azure' and self.config.azure_deployment:
            model = self.config.azure_deployment

        request: Dict[str, Any] = {
            'model': model,
            'messages': [
                {'role': 'system', 'content': SYSTEM_PROMPT},
                {'role': 'user', 'content': build_prompt(batch)},
            ],
            'temperature': self.config.temperature,
            'max_tokens': self.config.max_tokens,
        }

        try:
            response = await self.client.chat.completions.create(**request)
        except OpenAIError as e:
            raise ClassificationError(f"AI request failed: {e}")

        content = ''
        if response.choices:
            content = (response.choices[0].message.content or '').strip()
        self.logger.debug(f"AI response for {len(batch)} items: {len(content)} chars")
        return parse_classification_response(content, batch)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
