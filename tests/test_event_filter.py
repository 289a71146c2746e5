"""Unit tests for ExclusionFilter."""
import pytest

from processor.event_filter import ExclusionFilter, compile_patterns


@pytest.fixture
def exclusion_filter():
    return ExclusionFilter(
        denylisted_calendar_ids=['holidays'],
        denylisted_event_types=['outOfOffice'],
        exclude_summary_patterns=['no disponible', r'^bloqueo\b'],
        include_private_events=False
    )


class TestExclusionFilter:
    """Test cases for ExclusionFilter."""

    def test_confirmed_event_is_kept(self, exclusion_filter, make_event):
        kept, excluded = exclusion_filter.filter([make_event()])

        assert len(kept) == 1
        assert excluded == []

    def test_cancelled_event_is_excluded(self, exclusion_filter, make_event):
        event = make_event(status='cancelled')

        kept, excluded = exclusion_filter.filter([event])

        assert kept == []
        assert excluded == [event]
        assert exclusion_filter.exclusion_reason(event) == ExclusionFilter.CANCELLED

    def test_denylisted_calendar(self, exclusion_filter, make_event):
        event = make_event(calendar_id='holidays')
        assert exclusion_filter.exclusion_reason(event) == ExclusionFilter.DENYLISTED_CALENDAR

    def test_denylisted_event_type_is_case_insensitive(self, exclusion_filter, make_event):
        event = make_event(event_type='OUTOFOFFICE')
        assert exclusion_filter.exclusion_reason(event) == ExclusionFilter.DENYLISTED_EVENT_TYPE

    def test_summary_patterns(self, exclusion_filter, make_event):
        assert exclusion_filter.exclusion_reason(
            make_event(title='Dra. López NO DISPONIBLE')
        ) == ExclusionFilter.SUMMARY_PATTERN
        assert exclusion_filter.exclusion_reason(
            make_event(title='Bloqueo agenda')
        ) == ExclusionFilter.SUMMARY_PATTERN
        assert exclusion_filter.exclusion_reason(make_event(title='Sin bloqueo')) is None

    def test_private_event_excluded_when_disabled(self, exclusion_filter, make_event):
        assert exclusion_filter.exclusion_reason(
            make_event(visibility='private')
        ) == ExclusionFilter.PRIVATE
        assert exclusion_filter.exclusion_reason(
            make_event(visibility='confidential')
        ) == ExclusionFilter.PRIVATE

    def test_private_event_kept_by_default(self, make_event):
        default_filter = ExclusionFilter()
        assert default_filter.exclusion_reason(make_event(visibility='private')) is None

    def test_first_matching_rule_wins(self, exclusion_filter, make_event):
        event = make_event(
            status='cancelled',
            calendar_id='holidays',
            title='No disponible',
            visibility='private'
        )
        assert exclusion_filter.exclusion_reason(event) == ExclusionFilter.CANCELLED

    def test_event_without_title(self, exclusion_filter, make_event):
        assert exclusion_filter.exclusion_reason(make_event(title=None)) is None

    def test_filter_preserves_order(self, exclusion_filter, make_event):
        events = [
            make_event(event_id='1'),
            make_event(event_id='2', status='cancelled'),
            make_event(event_id='3'),
            make_event(event_id='4', title='No disponible')
        ]

        kept, excluded = exclusion_filter.filter(events)

        assert [event.event_id for event in kept] == ['1', '3']
        assert [event.event_id for event in excluded] == ['2', '4']

    def test_default_pattern_blocks_placeholders(self, make_event):
        default_filter = ExclusionFilter()
        assert default_filter.exclusion_reason(
            make_event(title='No disponible')
        ) == ExclusionFilter.SUMMARY_PATTERN


def test_invalid_regex_is_matched_literally():
    patterns = compile_patterns(['(sin cerrar', ''])

    assert len(patterns) == 1
    assert patterns[0].search('Turno (sin cerrar)')
    assert not patterns[0].search('sin cerrar')
