"""
Tests for threat classification

Tests AI response parsing, the OpenAI gateway, the keyword fallback heuristic
and batch isolation in BatchClassifier.
"""

import asyncio
import json
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from openai import OpenAIError

from threat_scraper.core.base import (
    ClassificationError,
    ClassificationMalformed,
    ClassificationOk,
    CyberEventType,
)
from threat_scraper.core.config import AIConfig
from threat_scraper.processors.ai_gateway import OpenAIClassifierGateway
from threat_scraper.processors.classifier import (
    AI_CONFIDENCE_SCORE,
    AI_RELEVANCE_SCORE,
    BatchClassifier,
    ThreatKeywordHeuristic,
    parse_classification_response,
)

from tests.fakes import ScriptedClassifierGateway, make_filtered_item


@pytest.fixture
def batch():
    return [
        make_filtered_item("Ransomware gang hits regional hospital network",
                           url="https://www.securityweek.com/ransomware-hospital",
                           source_url="https://www.securityweek.com/news"),
        make_filtered_item("Company announces quarterly earnings growth",
                           url="https://www.securityweek.com/earnings",
                           source_url="https://www.securityweek.com/news"),
    ]


class TestParseClassificationResponse:
    """Test suite for AI response parsing"""

    def test_maps_relevant_items(self, batch):
        response = json.dumps([
            {
                'index': 0,
                'cybersecurity_relevant': True,
                'title': 'Hospital hit by LockBit',
                'summary': 'LockBit encrypted hospital systems.',
                'risk_score': 8,
                'event_type': 'MALWARE_CAMPAIGN',
                'threat_actors': ['LockBit', 'Affiliate'],
                'victims': ['Regional Hospital'],
                'victim_country': 'Germany',
                'impact': 'HIGH',
                'attack_vectors': ['phishing', 'rdp'],
                'vulnerabilities': ['CVE-2023-4966'],
                'key_findings': ['ransomware', 'healthcare'],
            },
            {'index': 1, 'cybersecurity_relevant': False},
        ])

        outcome = parse_classification_response(f"Here you go:\n{response}\nDone.", batch)

        assert isinstance(outcome, ClassificationOk)
        assert len(outcome.articles) == 1
        article = outcome.articles[0]
        assert article.url == batch[0].url
        assert article.article_title == 'Hospital hit by LockBit'
        assert article.risk_score == 8
        assert article.event_type == CyberEventType.MALWARE_CAMPAIGN
        assert article.attacker == 'LockBit'
        assert article.victim == 'Regional Hospital'
        assert article.victim_country == 'Germany'
        assert article.impact == 'high'
        assert article.keywords == ('ransomware', 'healthcare')
        assert article.cybersecurity_topics == ('phishing', 'rdp')
        assert article.vulnerabilities == ('CVE-2023-4966',)
        assert article.site == 'securityweek.com'
        assert article.confidence_score == AI_CONFIDENCE_SCORE
        assert article.relevance_score == AI_RELEVANCE_SCORE
        assert article.fallback is False

    def test_defaults_and_clamping(self, batch):
        response = json.dumps([{
            'index': 0,
            'cybersecurity_relevant': True,
            'risk_score': 42,
            'event_type': 'RANSOMWARE_ATTACK',
            'impact': 'catastrophic',
            'victim_country': None,
            'threat_actors': 'Scattered Spider',
        }])

        article = parse_classification_response(response, batch).articles[0]

        assert article.risk_score == 10
        assert article.event_type == CyberEventType.MALWARE_CAMPAIGN
        assert article.impact == 'medium'
        assert article.victim_country == 'Unknown'
        assert article.attacker == 'Scattered Spider'
        assert article.victim == 'Unknown'
        assert article.article_title == batch[0].title
        assert article.summary == 'No summary available'

    def test_unknown_event_type(self, batch):
        response = '[{"index": 0, "cybersecurity_relevant": true, "event_type": "ALIENS"}]'
        article = parse_classification_response(response, batch).articles[0]
        assert article.event_type == CyberEventType.UNKNOWN

    def test_scalar_where_list_expected(self, batch):
        response = '[{"index": 0, "cybersecurity_relevant": true, "victims": 5, "key_findings": false}]'

        outcome = parse_classification_response(response, batch)

        assert isinstance(outcome, ClassificationOk)
        assert outcome.articles[0].victim == '5'
        assert outcome.articles[0].keywords == ('False',)

    def test_out_of_range_risk_score(self, batch):
        response = '[{"index": 0, "cybersecurity_relevant": true, "risk_score": 1e999}]'

        outcome = parse_classification_response(response, batch)

        assert isinstance(outcome, ClassificationOk)
        assert outcome.articles[0].risk_score == 5

    def test_empty_array_is_ok(self, batch):
        outcome = parse_classification_response("[]", batch)
        assert isinstance(outcome, ClassificationOk)
        assert outcome.articles == []

    @pytest.mark.parametrize("raw_text", [
        "I cannot help with that.",
        "[{not json}]",
        '[{"cybersecurity_relevant": true}]',
        '[{"index": 5, "cybersecurity_relevant": true}]',
        '[{"index": 0}, {"index": 0}]',
        '[1, 2, 3]',
    ])
    def test_malformed_responses(self, batch, raw_text):
        outcome = parse_classification_response(raw_text, batch)
        assert isinstance(outcome, ClassificationMalformed)
        assert outcome.reason


class TestThreatKeywordHeuristic:
    """Test suite for the keyword fallback"""

    @pytest.fixture
    def heuristic(self):
        return ThreatKeywordHeuristic()

    def test_detects_malware(self, heuristic):
        item = make_filtered_item("New ransomware strain spreads through botnet",
                                  content="The ransomware loader uses a botnet for distribution.")
        article = heuristic.analyze(item)

        assert article.event_type == CyberEventType.MALWARE_CAMPAIGN
        assert article.fallback is True
        assert article.confidence_score == 0.0
        assert article.risk_score == 5
        assert 'ransomware' in article.keywords

    def test_detects_vulnerability(self, heuristic):
        item = make_filtered_item("Critical vulnerability CVE-2024-3400 gets emergency patch")
        assert heuristic.analyze(item).event_type == CyberEventType.VULNERABILITY_DISCLOSURE

    def test_unmatched_item_is_unclassified(self, heuristic):
        item = make_filtered_item("Company announces quarterly earnings growth")
        article = heuristic.analyze(item)

        assert article.event_type == CyberEventType.UNKNOWN
        assert article.keywords == ("unclassified",)

    def test_empty_item_is_skipped(self, heuristic):
        assert heuristic.analyze(make_filtered_item("", content="")) is None


class TestBatchClassifier:
    """Test suite for BatchClassifier"""

    def _items(self, count):
        return [
            make_filtered_item(f"Threat report number {i} on ransomware activity",
                               url=f"https://news.example.com/report-{i}", index=i)
            for i in range(count)
        ]

    def test_chunking_caps_items(self):
        classifier = BatchClassifier(None, batch_size=3, max_batches=2)
        chunks = classifier.chunk(self._items(10))

        assert [len(chunk) for chunk in chunks] == [3, 3]

    def test_chunking_keeps_remainder(self):
        classifier = BatchClassifier(None, batch_size=4, max_batches=5)
        assert [len(chunk) for chunk in classifier.chunk(self._items(10))] == [4, 4, 2]

    @pytest.mark.asyncio
    async def test_ai_batch(self):
        gateway = ScriptedClassifierGateway()
        classifier = BatchClassifier(gateway, batch_size=5)

        outcome = await classifier.classify_batch(self._items(3))

        assert not outcome.used_fallback
        assert outcome.ai_relevant == 3
        assert all(not article.fallback for article in outcome.articles)

    @pytest.mark.asyncio
    async def test_fallback_isolation(self):
        """The second of three batches is malformed; the others stay AI-classified"""
        gateway = ScriptedClassifierGateway([None, "Sorry, I can't produce JSON today.", None])
        classifier = BatchClassifier(gateway, batch_size=2, max_batches=5)

        outcomes = await classifier.process(self._items(6))

        assert [o.used_fallback for o in outcomes] == [False, True, False]
        assert [o.ai_relevant for o in outcomes] == [2, 0, 2]
        assert all(not a.fallback and a.confidence_score == AI_CONFIDENCE_SCORE
                   for a in outcomes[0].articles + outcomes[2].articles)
        assert len(outcomes[1].articles) == 2
        assert all(a.fallback for a in outcomes[1].articles)
        assert "Malformed" in outcomes[1].reason

    @pytest.mark.asyncio
    async def test_gateway_error_falls_back(self):
        gateway = ScriptedClassifierGateway([ClassificationError("rate limited")])
        outcome = await BatchClassifier(gateway).classify_batch(self._items(2))

        assert outcome.used_fallback
        assert "rate limited" in outcome.reason
        assert len(outcome.articles) == 2

    @pytest.mark.asyncio
    async def test_unexpected_gateway_error_falls_back(self):
        gateway = ScriptedClassifierGateway([TypeError("'int' object is not iterable"), None])
        classifier = BatchClassifier(gateway, batch_size=2)

        first = await classifier.classify_batch(self._items(2), 1, 2)
        second = await classifier.classify_batch(self._items(2), 2, 2)

        assert first.used_fallback
        assert "TypeError" in first.reason
        assert len(first.articles) == 2
        assert not second.used_fallback
        assert second.ai_relevant == 2

    @pytest.mark.asyncio
    async def test_missing_gateway_falls_back(self):
        outcome = await BatchClassifier(None).classify_batch(self._items(2))

        assert outcome.used_fallback
        assert outcome.ai_relevant == 0

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        class SlowGateway(ScriptedClassifierGateway):
            async def classify(self, batch):
                await asyncio.sleep(10)

        outcome = await BatchClassifier(SlowGateway(), batch_timeout=0.01).classify_batch(self._items(1))

        assert outcome.used_fallback
        assert "timed out" in outcome.reason

    @pytest.mark.asyncio
    async def test_process_stops_early(self):
        gateway = ScriptedClassifierGateway()
        classifier = BatchClassifier(gateway, batch_size=1)
        calls = []

        def should_stop():
            calls.append(True)
            return len(calls) > 2

        outcomes = await classifier.process(self._items(4), should_stop)

        assert len(outcomes) == 2
        assert len(gateway.calls) == 2

    @pytest.mark.asyncio
    async def test_process_reports_each_outcome(self):
        gateway = ScriptedClassifierGateway([None, "no json here"])
        classifier = BatchClassifier(gateway, batch_size=3)
        seen = []

        outcomes = await classifier.process(self._items(5), on_outcome=seen.append)

        assert seen == outcomes
        assert [(o.batch_number, o.total_batches, o.items) for o in seen] == [(1, 2, 3), (2, 2, 2)]
        assert [o.used_fallback for o in seen] == [False, True]


def completion(content):
    return MagicMock(choices=[MagicMock(message=MagicMock(content=content))])


class TestOpenAIClassifierGateway:
    """Test suite for OpenAIClassifierGateway"""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock()
        client.close = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_classify(self, client, batch):
        client.chat.completions.create.return_value = completion(json.dumps([
            {'index': 0, 'cybersecurity_relevant': True, 'title': 'Hospital ransomware',
             'risk_score': 9, 'event_type': 'MALWARE_CAMPAIGN'},
            {'index': 1, 'cybersecurity_relevant': False},
        ]))
        gateway = OpenAIClassifierGateway(AIConfig(model="gpt-test"), client=client)

        outcome = await gateway.classify(batch)

        assert isinstance(outcome, ClassificationOk)
        assert len(outcome.articles) == 1
        assert outcome.articles[0].risk_score == 9

        request = client.chat.completions.create.call_args.kwargs
        assert request['model'] == "gpt-test"
        assert "Company announces quarterly earnings growth" in request['messages'][1]['content']

    @pytest.mark.asyncio
    async def test_azure_uses_deployment(self, client, batch):
        client.chat.completions.create.return_value = completion('[]')
        config = AIConfig(provider='azure', azure_deployment="threat-gpt")

        await OpenAIClassifierGateway(config, client=client).classify(batch)

        assert client.chat.completions.create.call_args.kwargs['model'] == "threat-gpt"

    @pytest.mark.asyncio
    async def test_prose_answer_is_malformed(self, client, batch):
        client.chat.completions.create.return_value = completion("I cannot help with that.")

        outcome = await OpenAIClassifierGateway(AIConfig(), client=client).classify(batch)

        assert isinstance(outcome, ClassificationMalformed)

    @pytest.mark.asyncio
    async def test_request_failure(self, client, batch):
        client.chat.completions.create.side_effect = OpenAIError("rate limited")

        with pytest.raises(ClassificationError):
            await OpenAIClassifierGateway(AIConfig(), client=client).classify(batch)

    @pytest.mark.asyncio
    async def test_without_api_key(self, batch):
        with patch.dict(os.environ, {}, clear=True):
            gateway = OpenAIClassifierGateway(AIConfig())

        assert not gateway.configured
        with pytest.raises(ClassificationError):
            await gateway.classify(batch)

    @pytest.mark.asyncio
    async def test_close(self, client):
        gateway = OpenAIClassifierGateway(AIConfig(), client=client)

        await gateway.close()

        client.close.assert_awaited_once()
