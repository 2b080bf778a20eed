"""
Tests for QualityFilter

Tests quality rules, social media and boilerplate rejection, and
signature-based deduplication.
"""

import pytest

from threat_scraper.core.base import FilteredContentItem
from threat_scraper.processors.content import QualityFilter

from tests.fakes import make_raw_item


class TestQualityFilter:
    """Test suite for QualityFilter"""

    @pytest.fixture
    def quality_filter(self):
        return QualityFilter()

    def test_accepts_good_item(self, quality_filter):
        assert quality_filter.rejection_reason(make_raw_item()) is None

    @pytest.mark.parametrize("kwargs,reason", [
        ({'title': "Short title"}, 'title too short'),
        ({'content': "tiny"}, 'content too short'),
        ({'url': "mailto:soc@example.com"}, 'not a web url'),
        ({'url': "https://www.facebook.com/some-security-page"}, 'social media link'),
        ({'url': "https://m.twitter.com/status/1"}, 'social media link'),
        ({'title': "Subscribe to our weekly threat newsletter"}, 'boilerplate'),
        ({'url': "https://news.example.com/privacy-policy"}, 'boilerplate'),
    ])
    def test_rejections(self, quality_filter, kwargs, reason):
        assert quality_filter.rejection_reason(make_raw_item(**kwargs)) == reason

    def test_boilerplate_matches_whole_words(self, quality_filter):
        item = make_raw_item(title="Researchers study the feedback loop of botnet operators")
        assert quality_filter.passes(item)

    def test_thresholds_are_configurable(self):
        lenient = QualityFilter(min_title_length=5, min_content_length=5)
        assert lenient.passes(make_raw_item(title="Botnet down"))

    def test_apply_returns_filtered_items_with_signature(self, quality_filter):
        items = [
            make_raw_item(),
            make_raw_item(title="Login"),
        ]
        filtered = quality_filter.apply(items)

        assert len(filtered) == 1
        assert isinstance(filtered[0], FilteredContentItem)
        assert filtered[0].filter_metadata['signature'] == quality_filter.signature(items[0])
        assert filtered[0].title == items[0].title

    def test_deduplicates_by_title_and_canonical_url(self, quality_filter):
        first = make_raw_item(url="https://News.example.com/story/?utm_source=feed&id=1", index=0)
        same = make_raw_item(title="  RANSOMWARE gang hits  regional hospital network ",
                             url="https://news.example.com/story?id=1#top", index=1)
        other = make_raw_item(url="https://news.example.com/story?id=2", index=2)

        unique = quality_filter.deduplicate([first, same, other])

        assert unique == [first, other]

    def test_deduplicate_is_idempotent(self, quality_filter):
        items = [
            make_raw_item(index=0),
            make_raw_item(index=1),
            make_raw_item(title="Critical flaw patched in enterprise VPN", index=2),
            make_raw_item(url="https://news.example.com/other", index=3),
        ]

        once = quality_filter.deduplicate(items)
        twice = quality_filter.deduplicate(once)

        assert twice == once
        assert len(once) == 3

    def test_first_occurrence_wins(self, quality_filter):
        first = make_raw_item(index=0)
        later = make_raw_item(index=5)

        assert quality_filter.deduplicate([first, later])[0].index == 0
