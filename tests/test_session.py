import asyncio
from unittest.mock import AsyncMock

import pytest

from botfleet.exceptions import ProviderError, StorageReadError, TransportAuthError
from botfleet.models import BotConfig, CompletionOptions, ContextRecord, SessionState
from botfleet.runtime.session import (
    CONTEXT_HEADER,
    FALLBACK_REPLY,
    NO_ANSWER_REPLY,
    PERMISSION_DENIED_REPLY,
    PREAMBLE,
    WELCOME_REPLY,
    BotSession,
    SessionPolicy,
    compose_system_text,
)
from botfleet.storage import DEFAULT_CONTEXT

from conftest import FakeCompletionClient, FakeTransport, wait_for_replies


def make_config(**overrides):
    values = {
        "id": "acme",
        "token": "123:abc",
        "systemPolicy": "Answer in one sentence.",
        "authorizedOperatorIds": ["42"],
    }
    values.update(overrides)
    return BotConfig.model_validate(values)


def make_session(config, context_store, completion_client, policy, config_store=None, operator_directory=None, transport=None):
    transport = transport or FakeTransport(config.id, config.token)
    session = BotSession(
        config,
        transport,
        completion_client,
        context_store,
        config_store=config_store,
        operator_directory=operator_directory,
        policy=policy,
    )
    return session, transport


def test_compose_system_text_orders_sections():
    text = compose_system_text("Be brief.", "Opening hours: 9-17")
    assert text.startswith(PREAMBLE)
    assert text.index("Be brief.") < text.index(CONTEXT_HEADER)
    assert text.endswith(f"{CONTEXT_HEADER}\nOpening hours: 9-17")


def test_compose_system_text_skips_empty_policy():
    assert compose_system_text("", "ctx") == f"{PREAMBLE}\n\n{CONTEXT_HEADER}\nctx"


@pytest.mark.asyncio
async def test_answers_with_private_context(context_store, completion_client, policy):
    await context_store.put("acme", ContextRecord("acme", "Acme sells anvils."))
    session, transport = make_session(make_config(), context_store, completion_client, policy)
    await session.start()

    transport.feed("7", "What do you sell?")
    replies = await wait_for_replies(transport, 1)

    assert replies == ["answer: What do you sell?"]
    system_text, user_text, options = completion_client.calls[0]
    assert user_text == "What do you sell?"
    assert "Answer in one sentence." in system_text
    assert system_text.endswith("Acme sells anvils.")
    assert options is policy.completion
    await session.stop()


@pytest.mark.asyncio
async def test_context_is_created_with_default_placeholder(context_store, completion_client, policy):
    session, transport = make_session(make_config(), context_store, completion_client, policy)
    await session.start()

    transport.feed("7", "hi")
    await wait_for_replies(transport, 1)

    assert completion_client.calls[0][0].endswith(DEFAULT_CONTEXT)
    assert (context_store.directory / "acme.txt").read_text() == DEFAULT_CONTEXT
    await session.stop()


@pytest.mark.asyncio
async def test_context_edits_apply_to_next_message(context_store, completion_client, policy):
    session, transport = make_session(make_config(), context_store, completion_client, policy)
    await session.start()

    transport.feed("7", "first")
    await wait_for_replies(transport, 1)
    await context_store.put("acme", ContextRecord("acme", "New price list"))
    transport.feed("7", "second")
    await wait_for_replies(transport, 2)

    assert completion_client.calls[1][0].endswith("New price list")
    await session.stop()


@pytest.mark.asyncio
async def test_unauthorized_command_is_denied_without_completion(context_store, completion_client, policy):
    session, transport = make_session(make_config(), context_store, completion_client, policy)
    await session.start()

    transport.feed("7", "/admin reset")
    replies = await wait_for_replies(transport, 1)

    assert replies == [PERMISSION_DENIED_REPLY]
    assert completion_client.calls == []
    await session.stop()


@pytest.mark.asyncio
async def test_authorized_operator_command_reaches_completion(context_store, completion_client, policy):
    session, transport = make_session(make_config(), context_store, completion_client, policy)
    await session.start()

    transport.feed("42", "/admin status")
    replies = await wait_for_replies(transport, 1)

    assert replies == ["answer: /admin status"]
    assert len(completion_client.calls) == 1
    await session.stop()


@pytest.mark.asyncio
async def test_operator_from_accounts_file(tmp_path, context_store, completion_client, policy, operator_directory):
    operator_directory.accounts_file.write_text(
        '[{"role": "customer", "telegramId": 99, "assignedBots": ["acme"]},'
        ' {"role": "customer", "telegramId": 100, "assignedBots": ["other"]}]'
    )
    session, transport = make_session(
        make_config(authorizedOperatorIds=[]), context_store, completion_client, policy,
        operator_directory=operator_directory,
    )
    await session.start()

    transport.feed("99", "/report")
    transport.feed("100", "/report")
    await wait_for_replies(transport, 2)

    replies = dict(transport.sent)
    assert replies["99"] == "answer: /report"
    assert replies["100"] == PERMISSION_DENIED_REPLY
    await session.stop()


@pytest.mark.asyncio
async def test_start_command_greets_everyone(context_store, completion_client, policy):
    session, transport = make_session(make_config(), context_store, completion_client, policy)
    await session.start()

    transport.feed("7", "/start")
    transport.feed("8", "/start@acme_bot")
    replies = await wait_for_replies(transport, 2)

    assert replies == [WELCOME_REPLY, WELCOME_REPLY]
    assert completion_client.calls == []
    await session.stop()


@pytest.mark.asyncio
async def test_failing_client_falls_back_and_keeps_running(context_store, policy):
    async def broken(system_text, user_text):
        raise ProviderError("quota exceeded")

    session, transport = make_session(make_config(), context_store, FakeCompletionClient(broken), policy)
    await session.start()

    for i in range(3):
        transport.feed(str(i), f"question {i}")
    replies = await wait_for_replies(transport, 3)

    assert replies == [FALLBACK_REPLY] * 3
    assert session.state is SessionState.RUNNING
    await session.stop()


@pytest.mark.asyncio
async def test_unexpected_client_exception_falls_back(context_store, policy):
    async def buggy(system_text, user_text):
        raise KeyError("choices")

    session, transport = make_session(make_config(), context_store, FakeCompletionClient(buggy), policy)
    await session.start()

    transport.feed("7", "hello")
    assert await wait_for_replies(transport, 1) == [FALLBACK_REPLY]
    assert session.state is SessionState.RUNNING
    await session.stop()


@pytest.mark.asyncio
async def test_completion_deadline_is_a_fallback(context_store):
    async def slow(system_text, user_text):
        await asyncio.sleep(5)
        return "too late"

    policy = SessionPolicy(completion=CompletionOptions(timeout=0.05), grace_period=0.5)
    session, transport = make_session(make_config(), context_store, FakeCompletionClient(slow), policy)
    await session.start()

    transport.feed("7", "hello")
    assert await wait_for_replies(transport, 1) == [FALLBACK_REPLY]
    await session.stop()


@pytest.mark.asyncio
async def test_empty_completion_gets_no_answer_reply(context_store, policy):
    async def empty(system_text, user_text):
        return "   "

    session, transport = make_session(make_config(), context_store, FakeCompletionClient(empty), policy)
    await session.start()

    transport.feed("7", "hello")
    assert await wait_for_replies(transport, 1) == [NO_ANSWER_REPLY]
    await session.stop()


@pytest.mark.asyncio
async def test_same_sender_replies_keep_request_order(context_store, policy):
    async def first_is_slow(system_text, user_text):
        await asyncio.sleep(0.2 if user_text == "first" else 0)
        return user_text

    session, transport = make_session(make_config(), context_store, FakeCompletionClient(first_is_slow), policy)
    await session.start()

    transport.feed("7", "first")
    transport.feed("7", "second")
    replies = await wait_for_replies(transport, 2)

    assert replies == ["first", "second"]
    await session.stop()


@pytest.mark.asyncio
async def test_different_senders_are_handled_concurrently(context_store, policy):
    release = asyncio.Event()

    async def blocks_for_alice(system_text, user_text):
        if user_text == "from alice":
            await release.wait()
        return user_text

    session, transport = make_session(make_config(), context_store, FakeCompletionClient(blocks_for_alice), policy)
    await session.start()

    transport.feed("alice", "from alice")
    transport.feed("bob", "from bob")
    assert await wait_for_replies(transport, 1) == ["from bob"]

    release.set()
    assert await wait_for_replies(transport, 2) == ["from bob", "from alice"]
    await session.stop()


@pytest.mark.asyncio
async def test_unreadable_context_fails_open(completion_client, policy):
    context_store = AsyncMock()
    context_store.get.side_effect = StorageReadError("disk on fire")
    session, transport = make_session(make_config(), context_store, completion_client, policy)
    await session.start()

    transport.feed("7", "hello")
    assert await wait_for_replies(transport, 1) == ["answer: hello"]
    assert completion_client.calls[0][0].endswith(f"{CONTEXT_HEADER}\n")
    await session.stop()


@pytest.mark.asyncio
async def test_policy_and_operators_are_read_fresh(config_store, context_store, completion_client, policy):
    config = make_config(authorizedOperatorIds=[])
    await config_store.put("acme", config)
    session, transport = make_session(config, context_store, completion_client, policy, config_store=config_store)
    await session.start()

    transport.feed("42", "/admin")
    await wait_for_replies(transport, 1)

    await config_store.put("acme", make_config(systemPolicy="Speak like a pirate.", authorizedOperatorIds=["42"]))
    transport.feed("42", "/admin")
    replies = await wait_for_replies(transport, 2)

    assert replies == [PERMISSION_DENIED_REPLY, "answer: /admin"]
    assert "Speak like a pirate." in completion_client.calls[0][0]
    await session.stop()


@pytest.mark.asyncio
async def test_rejected_token_marks_session_errored(context_store, completion_client, policy):
    config = make_config()
    transport = FakeTransport(config.id, config.token, start_error=TransportAuthError("401 Unauthorized"))
    session, _ = make_session(config, context_store, completion_client, policy, transport=transport)

    with pytest.raises(TransportAuthError):
        await session.start()

    handle = session.handle()
    assert handle.state is SessionState.ERRORED
    assert "401" in handle.last_error
    assert transport.stop_calls == 1


@pytest.mark.asyncio
async def test_token_revoked_while_running_marks_session_errored(context_store, completion_client, policy):
    session, transport = make_session(make_config(), context_store, completion_client, policy)
    await session.start()

    transport._fail(TransportAuthError("401 Unauthorized"))
    for _ in range(100):
        if session.state is SessionState.ERRORED:
            break
        await asyncio.sleep(0.01)

    assert session.state is SessionState.ERRORED
    await session.stop()
    assert session.state is SessionState.STOPPED


@pytest.mark.asyncio
async def test_stop_abandons_stuck_handler_and_discards_its_reply(context_store):
    async def never_returns(system_text, user_text):
        await asyncio.sleep(3600)
        return "ghost"

    policy = SessionPolicy(completion=CompletionOptions(timeout=3600), grace_period=0.1)
    session, transport = make_session(make_config(), context_store, FakeCompletionClient(never_returns), policy)
    await session.start()
    transport.feed("7", "hello")
    await asyncio.sleep(0.05)

    loop = asyncio.get_running_loop()
    began = loop.time()
    await session.stop()

    assert session.state is SessionState.STOPPED
    assert loop.time() - began < 1.5
    assert transport.sent == []
    assert transport.stop_calls == 1


@pytest.mark.asyncio
async def test_stop_lets_short_handler_finish(context_store, policy):
    async def quick(system_text, user_text):
        await asyncio.sleep(0.05)
        return "done"

    session, transport = make_session(make_config(), context_store, FakeCompletionClient(quick), policy)
    await session.start()
    transport.feed("7", "hello")
    await asyncio.sleep(0.01)

    await session.stop()

    assert transport.replies() == ["done"]
    assert session.state is SessionState.STOPPED


@pytest.mark.asyncio
async def test_concurrent_stops_share_one_shutdown(context_store, completion_client, policy):
    session, transport = make_session(make_config(), context_store, completion_client, policy)
    await session.start()

    await asyncio.gather(session.stop(), session.stop())

    assert session.state is SessionState.STOPPED
    assert transport.stop_calls == 1


@pytest.mark.asyncio
async def test_unexpected_receive_error_marks_session_errored(context_store, completion_client, policy):
    session, transport = make_session(make_config(), context_store, completion_client, policy)
    await session.start()

    transport._fail(RuntimeError("transport bug"))
    for _ in range(100):
        if session.state is SessionState.ERRORED:
            break
        await asyncio.sleep(0.01)

    assert session.state is SessionState.ERRORED
    assert "transport bug" in session.handle().last_error
    assert session.retryable
    await session.stop()


@pytest.mark.asyncio
async def test_revoked_token_is_not_retryable(context_store, completion_client, policy):
    config = make_config()
    transport = FakeTransport(config.id, config.token, start_error=TransportAuthError("401 Unauthorized"))
    session, _ = make_session(config, context_store, completion_client, policy, transport=transport)

    with pytest.raises(TransportAuthError):
        await session.start()

    assert not session.retryable


@pytest.mark.asyncio
async def test_zero_grace_stop_is_immediate(context_store):
    async def never_returns(system_text, user_text):
        await asyncio.sleep(3600)
        return "ghost"

    policy = SessionPolicy(completion=CompletionOptions(timeout=3600), grace_period=5.0)
    session, transport = make_session(make_config(), context_store, FakeCompletionClient(never_returns), policy)
    await session.start()
    transport.feed("7", "hello")
    await asyncio.sleep(0.05)

    loop = asyncio.get_running_loop()
    began = loop.time()
    await session.stop(grace_period=0)

    assert loop.time() - began < 1.0
    assert session.state is SessionState.STOPPED
    assert transport.stop_calls == 1
    assert transport.sent == []


@pytest.mark.asyncio
async def test_stop_total_time_is_bounded_by_grace_period(context_store):
    async def never_returns(system_text, user_text):
        await asyncio.sleep(3600)
        return "ghost"

    grace = 0.4
    policy = SessionPolicy(completion=CompletionOptions(timeout=3600), grace_period=grace)
    slow_close = FakeTransport("acme", "123:abc")

    async def hanging_stop():
        slow_close.stop_calls += 1
        await asyncio.sleep(3600)

    slow_close.stop = hanging_stop
    session, transport = make_session(
        make_config(), context_store, FakeCompletionClient(never_returns), policy, transport=slow_close
    )
    await session.start()
    transport.feed("7", "hello")
    await asyncio.sleep(0.05)

    loop = asyncio.get_running_loop()
    began = loop.time()
    await session.stop()

    assert loop.time() - began < grace + 0.6
    assert session.state is SessionState.STOPPED


@pytest.mark.asyncio
async def test_stop_while_connecting_cancels_the_connect(context_store, completion_client, policy):
    config = make_config()
    transport = FakeTransport(config.id, config.token, start_delay=3.0)
    session, _ = make_session(config, context_store, completion_client, policy, transport=transport)

    start_task = asyncio.create_task(session.start())
    await asyncio.sleep(0.05)
    await asyncio.wait_for(session.stop(), timeout=1.0)
    await asyncio.wait_for(start_task, timeout=1.0)

    assert session.state is SessionState.STOPPED
    assert session.started_at is None
    assert transport.stop_calls == 1
