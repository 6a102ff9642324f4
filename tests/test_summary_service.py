"""Tests for incremental, persisted summarization."""

import dataclasses

import pytest
from conftest import FakeLLM, make_messages

from chatmemory.services.summary_service import (SUMMARY_ACK, SUMMARY_ACK_ID, SUMMARY_MESSAGE_ID, SummaryError,
                                                 SummaryService)
from chatmemory.utils.bedrock_llm import BedrockLLMError

LONG_TEXT = 'word ' * 80


@pytest.fixture
def service(summary_config, fake_store, fake_llm, fake_embed, estimator) -> SummaryService:
    return SummaryService(summary_config, fake_store, fake_llm, fake_embed, estimator)


def _small_threshold(service, threshold=10, keep=15):
    service.config = dataclasses.replace(service.config, threshold_tokens=threshold, recent_messages_to_keep=keep)
    return service


class TestPersistence:

    def test_missing_summary_is_none(self, service):
        assert service.get_summary('s1') is None

    def test_save_creates_then_versions(self, service, fake_store):
        first = service.save_summary('s1', 'u1', 'first summary', 10)
        second = service.save_summary('s1', 'u1', 'second summary', 20)

        assert first.version == 1
        assert second.version == 2
        assert second.created_at == first.created_at
        assert len(fake_store.docs('summary')) == 1

        stored = service.get_summary('s1')
        assert stored.summary_text == 'second summary'
        assert stored.messages_summarized_count == 20
        assert stored.user_id == 'u1'

    def test_save_records_embedding_identity(self, service, fake_store, fake_embed):
        service.save_summary('s1', 'u1', 'text', 3)

        doc = fake_store.docs('summary')['s1']
        assert doc['embedding_model'] == fake_embed.model_identity
        assert len(doc['embedding']) == fake_embed.dimension

    def test_embedding_failure_still_saves(self, service, fake_store, fake_embed):
        fake_embed.fail = True

        summary = service.save_summary('s1', 'u1', 'text', 3)

        assert summary.embedding is None
        assert 'embedding' not in fake_store.docs('summary')['s1']

    def test_store_failure_raises(self, service, fake_store):
        fake_store.fail = True

        with pytest.raises(SummaryError):
            service.get_summary('s1')

    def test_delete(self, service):
        service.save_summary('s1', 'u1', 'text', 3)

        assert service.delete_summary('s1') is True
        assert service.get_summary('s1') is None


class TestNeedsSummarization:

    def test_below_threshold(self, service):
        assert service.needs_summarization('s1', make_messages(20)) is False

    def test_six_hundred_messages_exceed_threshold(self, service):
        assert service.needs_summarization('s1', make_messages(600, text=LONG_TEXT)) is True

    def test_error_messages_are_not_counted(self, service):
        service = _small_threshold(service, threshold=100)
        history = [dataclasses.replace(m, is_error=True) for m in make_messages(10, text=LONG_TEXT)]

        assert service.needs_summarization('s1', history) is False

    def test_counts_summary_plus_unfolded_messages(self, service):
        service = _small_threshold(service, threshold=60)
        history = make_messages(4, text='abcd')
        service.save_summary('s1', 'u1', 'x' * 400, 2)

        # 100 summary tokens + two small unfolded messages
        assert service.needs_summarization('s1', history) is True


class TestSummarizeIfNeeded:

    def test_no_summary_below_threshold(self, service, fake_llm):
        assert service.summarize_if_needed('s1', 'u1', make_messages(20)) is None
        assert fake_llm.calls == []

    def test_first_breach_folds_all_but_keep_fresh(self, service, fake_llm):
        history = make_messages(600, text=LONG_TEXT)

        summary = service.summarize_if_needed('s1', 'u1', history)

        assert summary.version == 1
        assert summary.messages_summarized_count == 585
        assert len(fake_llm.calls) == 1
        assert fake_llm.calls[0]['model_id'] == 'helper-model'
        assert fake_llm.calls[0]['temperature'] == 0.3
        assert 'Existing summary' not in fake_llm.calls[0]['messages'][0]['content'][0]['text']

    def test_second_call_without_new_messages_is_noop(self, service, fake_llm):
        service = _small_threshold(service)
        history = make_messages(20, text=LONG_TEXT)

        first = service.summarize_if_needed('s1', 'u1', history)
        second = service.summarize_if_needed('s1', 'u1', history)

        assert first.messages_summarized_count == 5
        assert second.version == first.version
        assert second.summary_text == first.summary_text
        assert second.messages_summarized_count == first.messages_summarized_count
        assert len(fake_llm.calls) == 1

    def test_incremental_merge_prompt(self, service, fake_llm):
        service = _small_threshold(service)
        history = make_messages(20, text=LONG_TEXT)
        service.summarize_if_needed('s1', 'u1', history)

        fake_llm.default_response = 'merged summary'
        updated = service.summarize_if_needed('s1', 'u1', history + make_messages(10, text=LONG_TEXT, start=2e9))

        assert updated.version == 2
        assert updated.messages_summarized_count == 15
        assert updated.summary_text == 'merged summary'
        prompt = fake_llm.calls[-1]['messages'][0]['content'][0]['text']
        assert '## Existing summary' in prompt
        assert '## New messages' in prompt

    def test_llm_failure_raises_summary_error(self, service, fake_llm):
        service = _small_threshold(service)
        fake_llm.responses = [BedrockLLMError('boom')]

        with pytest.raises(SummaryError):
            service.summarize_if_needed('s1', 'u1', make_messages(20, text=LONG_TEXT))

        assert service.get_summary('s1') is None


class TestGenerateSummary:

    def test_overlong_summary_is_truncated(self, summary_config, fake_store, fake_embed, estimator):
        llm = FakeLLM(responses=['a' * 10_000])
        service = SummaryService(summary_config, fake_store, llm, fake_embed, estimator)

        text = service.generate_summary(make_messages(2))

        assert len(text) == 2000 * 4 + 3
        assert text.endswith('...')

    def test_whitespace_is_collapsed_to_one_paragraph(self, summary_config, fake_store, fake_embed, estimator):
        llm = FakeLLM(responses=['line one\n\nline   two\n'])
        service = SummaryService(summary_config, fake_store, llm, fake_embed, estimator)

        assert service.generate_summary(make_messages(2)) == 'line one line two'

    def test_empty_response_raises(self, summary_config, fake_store, fake_embed, estimator):
        service = SummaryService(summary_config, fake_store, FakeLLM(responses=['  ']), fake_embed, estimator)

        with pytest.raises(SummaryError):
            service.generate_summary(make_messages(2))


class TestBuildContextWithSummary:

    def test_without_summary_returns_valid_messages(self, service):
        history = make_messages(12)
        history[4] = dataclasses.replace(history[4], is_error=True)

        context = service.build_context_with_summary('s1', 'u1', history)

        assert len(context) == 11
        assert all(m.id not in (SUMMARY_MESSAGE_ID, SUMMARY_ACK_ID) for m in context)

    def test_six_hundred_messages_build_summary_plus_keep_fresh(self, service):
        history = make_messages(600, text=LONG_TEXT)

        context = service.build_context_with_summary('s1', 'u1', history)

        assert len(context) == 2 + 15
        assert context[0].id == SUMMARY_MESSAGE_ID
        assert context[0].role == 'user'
        assert context[0].text.startswith('[Previous conversation summary]\n')
        assert context[0].text.endswith('\n[End of summary - conversation continues below]')
        assert context[1].id == SUMMARY_ACK_ID
        assert context[1].text == SUMMARY_ACK
        assert context[2:] == history[-15:]

    def test_fully_folded_session_falls_back_to_all_messages(self, service):
        history = make_messages(4)
        service.save_summary('s1', 'u1', 'synopsis', 4)

        assert service.build_context_with_summary('s1', 'u1', history) == history
