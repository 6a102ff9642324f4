"""Tests for streaming generation, retries and post-turn scheduling."""

import threading

import pytest
from conftest import make_messages

from chatmemory.models.core import ASSISTANT_ROLE, USER_ROLE
from chatmemory.services.context_assembler import ContextAssembler
from chatmemory.services.context_window import ContextWindowBuilder
from chatmemory.services.error_handling import ErrorType, GenerationError, SafetyBlockedError
from chatmemory.services.generation import THINKING_END, THINKING_START, GenerationOrchestrator
from chatmemory.services.memory_service import MemoryService
from chatmemory.services.summary_service import SummaryService
from chatmemory.utils.bedrock_llm import BedrockLLMError, StreamEvent

THROTTLED = 'ThrottlingException: Too many requests, please wait before trying again.'


class RecordingRunner:

    def __init__(self):
        self.jobs = []

    def submit(self, name, fn, *args, **kwargs):
        self.jobs.append((name, fn, args))
        return None


def _text(*chunks):
    return [StreamEvent('text', chunk) for chunk in chunks]


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def memory(memory_config, fake_store, fake_llm, fake_embed) -> MemoryService:
    return MemoryService(memory_config, fake_store, fake_llm, fake_embed)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(llm_config, fake_llm, context_config, summary_config, estimator, fake_store, fake_embed, memory, runner,
                 sleeps) -> GenerationOrchestrator:
    window = ContextWindowBuilder(context_config, estimator)
    summaries = SummaryService(summary_config, fake_store, fake_llm, fake_embed, estimator)
    assembler = ContextAssembler(window, summaries, memory)
    return GenerationOrchestrator(llm_config, fake_llm, assembler, runner, memory=memory, sleep=sleeps.append)


def _collect(stream):
    chunks = []
    try:
        for chunk in stream:
            chunks.append(chunk)
    except GenerationError as e:
        return chunks, e
    return chunks, None


class TestStreaming:

    def test_answer_chunks_in_order(self, orchestrator, fake_llm):
        fake_llm.stream_scripts = [_text('Hel', 'lo', '!')]

        chunks = list(orchestrator.generate_stream(None, None, make_messages(2), 'hi', 'Be brief.'))

        assert chunks == ['Hel', 'lo', '!']
        call = fake_llm.stream_calls[0]
        assert call['system_prompt'] == 'Be brief.'
        assert call['messages'][-1] == {'role': USER_ROLE, 'content': [{'text': 'hi'}]}

    def test_thinking_is_wrapped(self, orchestrator, fake_llm):
        fake_llm.stream_scripts = [[
            StreamEvent('thinking', 'Let me think'),
            StreamEvent('thinking', ' more'),
            StreamEvent('text', 'Answer'),
            StreamEvent('stop', finish_reason='end_turn'),
        ]]

        chunks = list(orchestrator.generate_stream(None, None, [], 'q', 'sys', thinking_level='HIGH'))

        assert chunks == [THINKING_START, 'Let me think', ' more', THINKING_END, 'Answer']
        assert fake_llm.stream_calls[0]['thinking_level'] == 'HIGH'

    def test_unterminated_thinking_is_closed(self, orchestrator, fake_llm):
        fake_llm.stream_scripts = [[StreamEvent('thinking', 'hmm')]]

        chunks = list(orchestrator.generate_stream(None, None, [], 'q', 'sys'))

        assert chunks == [THINKING_START, 'hmm', THINKING_END]


class TestSafety:

    def test_safety_stop_reason_raises(self, orchestrator, fake_llm, sleeps):
        fake_llm.stream_scripts = [[StreamEvent('stop', finish_reason='guardrail_intervened')]]

        with pytest.raises(SafetyBlockedError) as excinfo:
            list(orchestrator.generate_stream(None, None, [], 'q', 'sys'))

        assert excinfo.value.parsed.type == ErrorType.SAFETY_BLOCKED
        assert len(fake_llm.stream_calls) == 1
        assert sleeps == []

    def test_empty_stream_is_safety_block(self, orchestrator, fake_llm):
        fake_llm.stream_scripts = [[StreamEvent('stop', finish_reason='end_turn')]]

        with pytest.raises(SafetyBlockedError):
            list(orchestrator.generate_stream(None, None, [], 'q', 'sys'))

        assert len(fake_llm.stream_calls) == 1


class TestRetries:

    def test_retryable_failure_before_output_is_retried(self, orchestrator, fake_llm, sleeps):
        fake_llm.stream_scripts = [[BedrockLLMError(THROTTLED)], _text('ok')]

        chunks, error = _collect(orchestrator.generate_stream(None, None, [], 'q', 'sys'))

        assert error is None
        assert chunks == ['ok']
        assert len(fake_llm.stream_calls) == 2
        assert len(sleeps) == 1
        assert 1.0 <= sleeps[0] <= 2.0

    def test_attempts_are_bounded(self, orchestrator, fake_llm, sleeps):
        fake_llm.stream_scripts = [[BedrockLLMError(THROTTLED)] for _ in range(5)]

        chunks, error = _collect(orchestrator.generate_stream(None, None, [], 'q', 'sys'))

        assert chunks == []
        assert error.parsed.type == ErrorType.RATE_LIMITED
        assert len(fake_llm.stream_calls) == 3
        assert len(sleeps) == 2
        assert 2.0 <= sleeps[1] <= 3.0

    def test_no_retry_after_output(self, orchestrator, fake_llm, sleeps):
        fake_llm.stream_scripts = [_text('partial') + [BedrockLLMError(THROTTLED)], _text('never')]

        chunks, error = _collect(orchestrator.generate_stream(None, None, [], 'q', 'sys'))

        assert chunks == ['partial']
        assert error.parsed.retryable is True
        assert len(fake_llm.stream_calls) == 1
        assert sleeps == []

    def test_non_retryable_failure_is_raised_at_once(self, orchestrator, fake_llm, sleeps):
        fake_llm.stream_scripts = [[BedrockLLMError('AccessDeniedException: no access to model')], _text('never')]

        chunks, error = _collect(orchestrator.generate_stream(None, None, [], 'q', 'sys'))

        assert error.parsed.type == ErrorType.INVALID_CREDENTIAL
        assert len(fake_llm.stream_calls) == 1
        assert sleeps == []

    def test_context_overflow_is_not_retried(self, orchestrator, fake_llm):
        fake_llm.stream_scripts = [[BedrockLLMError('ValidationException: Input is too long for requested model.')]]

        _, error = _collect(orchestrator.generate_stream(None, None, [], 'q', 'sys'))

        assert error.parsed.type == ErrorType.CONTEXT_OVERFLOW
        assert len(fake_llm.stream_calls) == 1

    def test_cancel_during_backoff_stops_retrying(self, orchestrator, fake_llm, runner, memory):
        cancel = threading.Event()
        cancelling = GenerationOrchestrator(orchestrator.config,
                                            fake_llm,
                                            orchestrator.assembler,
                                            runner,
                                            memory=memory,
                                            sleep=lambda delay: cancel.set())
        fake_llm.stream_scripts = [[BedrockLLMError(THROTTLED)], _text('never')]

        chunks, error = _collect(cancelling.generate_stream('u1', 's1', make_messages(2), 'hi', 'sys', cancel_event=cancel))

        assert (chunks, error) == ([], None)
        assert len(fake_llm.stream_calls) == 1
        assert runner.jobs == []

    def test_backoff_waits_on_cancel_event(self, orchestrator, fake_llm, runner):

        class CancelledWhileWaiting(threading.Event):

            def __init__(self):
                super().__init__()
                self.timeouts = []

            def wait(self, timeout=None):
                self.timeouts.append(timeout)
                self.set()
                return True

        cancel = CancelledWhileWaiting()
        waiting = GenerationOrchestrator(orchestrator.config, fake_llm, orchestrator.assembler, runner)
        fake_llm.stream_scripts = [[BedrockLLMError(THROTTLED)], _text('never')]

        chunks = list(waiting.generate_stream(None, None, [], 'q', 'sys', cancel_event=cancel))

        assert chunks == []
        assert len(cancel.timeouts) == 1
        assert 1.0 <= cancel.timeouts[0] <= 2.0
        assert len(fake_llm.stream_calls) == 1


class TestPostTurn:

    def test_extraction_scheduled_after_success(self, orchestrator, fake_llm, runner, memory):
        history = make_messages(4)
        fake_llm.stream_scripts = [[StreamEvent('thinking', 'plan')] + _text('I am ', 'fine.')]

        list(orchestrator.generate_stream('u1', 's1', history, 'how are you?', 'sys'))

        assert len(runner.jobs) == 1
        name, fn, args = runner.jobs[0]
        assert name == 'memory-extraction:s1'
        assert fn == memory.process_conversation_for_memories
        user_id, session_id, conversation = args
        assert (user_id, session_id) == ('u1', 's1')
        assert conversation[:4] == history
        assert conversation[4].role == USER_ROLE
        assert conversation[4].text == 'how are you?'
        assert conversation[5].role == ASSISTANT_ROLE
        assert conversation[5].text == 'I am fine.'

    def test_nothing_scheduled_for_guests(self, orchestrator, fake_llm, runner):
        fake_llm.stream_scripts = [_text('hello')]

        list(orchestrator.generate_stream(None, None, [], 'hi', 'sys'))

        assert runner.jobs == []

    def test_nothing_scheduled_for_temporary_sessions(self, orchestrator, fake_llm, runner):
        fake_llm.stream_scripts = [_text('hello')]

        list(orchestrator.generate_stream('u1', 's1', make_messages(2), 'hi', 'sys', is_temporary=True))

        assert runner.jobs == []

    def test_nothing_scheduled_after_failure(self, orchestrator, fake_llm, runner):
        fake_llm.stream_scripts = [[BedrockLLMError('AccessDeniedException')]]

        _collect(orchestrator.generate_stream('u1', 's1', make_messages(2), 'hi', 'sys'))

        assert runner.jobs == []

    def test_cancellation_schedules_nothing(self, orchestrator, fake_llm, runner):
        fake_llm.stream_scripts = [_text('a', 'b', 'c')]
        cancel = threading.Event()
        cancel.set()

        chunks = list(orchestrator.generate_stream('u1', 's1', make_messages(2), 'hi', 'sys', cancel_event=cancel))

        assert chunks == []
        assert runner.jobs == []

    def test_closing_the_stream_schedules_nothing(self, orchestrator, fake_llm, runner):
        fake_llm.stream_scripts = [_text('a', 'b', 'c')]

        stream = orchestrator.generate_stream('u1', 's1', make_messages(2), 'hi', 'sys')
        assert next(stream) == 'a'
        stream.close()

        assert runner.jobs == []
