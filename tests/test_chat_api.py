import asyncio
import json

from sqlmodel import Session, select

from chatwidget.main import app
from chatwidget.models.conversation import Conversation, Message
from chatwidget.services import conversation_store

from .conftest import ASSISTANT_ID, OTHER_PRINCIPAL, PRINCIPAL


def _count(engine, model) -> int:
    with Session(engine) as session:
        return len(session.exec(select(model)).all())


# ---------------------- Streaming chat ----------------------


def test_stream_new_conversation_end_to_end(client, headers, provider, assistant):
    provider.answer = "Hello.\nOur plans start at $10 per month."

    r = client.post(
        "/api/chat/stream",
        json={"message": "How much does it cost?", "assistantId": ASSISTANT_ID},
        headers=headers,
    )

    assert r.status_code == 200, r.text
    assert r.headers["content-type"].startswith("text/plain")
    assert r.headers["cache-control"] == "no-cache"
    assert r.text == provider.answer
    thread_id = r.headers["x-thread-id"]

    r = client.get("/api/chat/messages", params={"thread_id": thread_id}, headers=headers)
    assert r.status_code == 200
    messages = r.json()["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[0]["content"] == "How much does it cost?"
    assert messages[1]["content"] == provider.answer
    assert messages[1]["assistant_id"] == ASSISTANT_ID
    assert messages[1]["metadata"]["openai_run_id"].startswith("run_")
    assert messages[1]["metadata"]["openai_message_id"].startswith("msg_")

    r = client.get("/api/chat/threads", params={"assistantId": ASSISTANT_ID}, headers=headers)
    threads = r.json()
    assert len(threads) == 1
    assert threads[0]["id"] == thread_id
    assert threads[0]["title"] == "Friendly greeting"


def test_stream_composes_prompt_and_context(client, headers, provider, assistant, session):
    assistant.user_prompt = "Answer briefly."
    session.add(assistant)
    session.commit()

    r = client.post(
        "/api/chat/stream",
        json={
            "message": "Summarize this label",
            "assistantId": ASSISTANT_ID,
            "labelData": {"sku": "A-1"},
        },
        headers=headers,
    )

    assert r.status_code == 200
    sent = next(call for call in provider.calls if call[0] == "create_message")[3]
    assert sent.startswith("Answer briefly.\n\nSummarize this label")
    assert sent.endswith('Data for context: {\n  "sku": "A-1"\n}')


def test_stream_existing_conversation_keeps_title(client, headers, provider, assistant, engine):
    with Session(engine) as session:
        conv = conversation_store.create_conversation(
            session, PRINCIPAL, ASSISTANT_ID, title="Billing",
            metadata={"openai_thread_id": "thread_known"},
        )
        conv_id = conv.id

    r = client.post(
        "/api/chat/stream",
        json={"message": "Next question", "assistantId": ASSISTANT_ID, "thread_id": conv_id},
        headers=headers,
    )

    assert r.status_code == 200
    assert r.headers["x-thread-id"] == conv_id
    assert "create_thread" not in provider.call_names()
    with Session(engine) as session:
        assert session.get(Conversation, conv_id).title == "Billing"
        assert len(conversation_store.list_turns(session, conv_id)) == 2


def test_stream_event_stream_framing(client, headers, provider, assistant):
    provider.answer = "Hi there"

    r = client.post(
        "/api/chat/stream",
        json={"message": "hello", "assistantId": ASSISTANT_ID},
        headers={**headers, "Accept": "text/event-stream"},
    )

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    frames = [json.loads(line[len("data: "):]) for line in r.text.split("\n\n") if line]
    assert frames[-1] == {"type": "finish"}
    assert "".join(f["delta"] for f in frames[:-1]) == "Hi there"


def test_stream_with_attachment(client, headers, provider, assistant, make_attachment):
    attachment = make_attachment()

    r = client.post(
        "/api/chat/stream",
        json={"message": "Analyze the file", "assistantId": ASSISTANT_ID, "filename": attachment.id},
        headers=headers,
    )

    assert r.status_code == 200
    create_message = next(call for call in provider.calls if call[0] == "create_message")
    assert len(create_message[4]) == 1
    assert create_message[4][0].startswith("file_")
    assert provider.call_names().index("upload_file") < provider.call_names().index("create_message")
    r = client.get("/api/chat/messages", params={"thread_id": r.headers["x-thread-id"]}, headers=headers)
    user_turn = r.json()["messages"][0]
    assert user_turn["metadata"]["attachment_id"] == attachment.id
    assert user_turn["metadata"]["openai_file_id"] == create_message[4][0]


def test_stream_foreign_attachment_fails_before_provider(client, headers, provider, assistant, make_attachment, engine):
    attachment = make_attachment(owner=OTHER_PRINCIPAL)

    r = client.post(
        "/api/chat/stream",
        json={"message": "Analyze the file", "assistantId": ASSISTANT_ID, "filename": attachment.id},
        headers=headers,
    )

    assert r.status_code == 403
    assert provider.calls == []
    assert _count(engine, Message) == 0
    assert _count(engine, Conversation) == 0


def test_stream_foreign_thread_is_denied_without_writes(client, headers, provider, assistant, engine):
    with Session(engine) as session:
        conv = conversation_store.create_conversation(session, OTHER_PRINCIPAL, ASSISTANT_ID)
        conv_id = conv.id

    r = client.post(
        "/api/chat/stream",
        json={"message": "hi", "assistantId": ASSISTANT_ID, "thread_id": conv_id},
        headers=headers,
    )

    assert r.status_code == 403
    assert provider.calls == []
    assert _count(engine, Message) == 0


def test_stream_unknown_thread_is_404(client, headers, provider, assistant):
    r = client.post(
        "/api/chat/stream",
        json={"message": "hi", "assistantId": ASSISTANT_ID, "thread_id": "missing"},
        headers=headers,
    )

    assert r.status_code == 404
    assert provider.calls == []


def test_stream_rejects_invalid_input(client, headers, provider, assistant):
    r = client.post("/api/chat/stream", json={"message": "   ", "assistantId": ASSISTANT_ID}, headers=headers)
    assert r.status_code == 400

    r = client.post("/api/chat/stream", json={"message": "hi"}, headers=headers)
    assert r.status_code == 400

    r = client.post("/api/chat/stream", json={"message": "hi", "assistantId": "unknown"}, headers=headers)
    assert r.status_code == 404
    assert provider.calls == []


def test_stream_requires_principal(client, provider, assistant):
    r = client.post("/api/chat/stream", json={"message": "hi", "assistantId": ASSISTANT_ID})
    assert r.status_code == 401


def test_stream_uses_configured_widget_user(client, provider, assistant, monkeypatch):
    from chatwidget.config import settings

    monkeypatch.setattr(settings, "CHAT_WIDGET_USER_ID", "widget-user")

    r = client.post("/api/chat/stream", json={"message": "hi", "assistantId": ASSISTANT_ID})

    assert r.status_code == 200
    r = client.get("/api/chat/threads", headers={"X-Principal-Id": "widget-user"})
    assert len(r.json()) == 1


def test_stream_setup_provider_failure_is_json_error(client, headers, provider, assistant, engine):
    provider.fail_on.add("create_thread")

    r = client.post("/api/chat/stream", json={"message": "hi", "assistantId": ASSISTANT_ID}, headers=headers)

    assert r.status_code == 500
    assert r.json()["detail"]
    assert _count(engine, Message) == 0


def test_stream_failure_after_start_ends_quietly(client, headers, provider, assistant):
    provider.statuses = ["in_progress", "failed"]
    provider.last_error = "server_error: boom"

    r = client.post("/api/chat/stream", json={"message": "hi", "assistantId": ASSISTANT_ID}, headers=headers)

    assert r.status_code == 200
    assert r.text == ""
    r = client.get("/api/chat/messages", params={"thread_id": r.headers["x-thread-id"]}, headers=headers)
    # Only the user turn survives; the client reconciles from this listing
    assert [m["role"] for m in r.json()["messages"]] == ["user"]


def test_stream_timeout_without_finish_frame(client, headers, provider, assistant):
    provider.statuses = ["in_progress"]

    r = client.post(
        "/api/chat/stream",
        json={"message": "hi", "assistantId": ASSISTANT_ID},
        headers={**headers, "Accept": "text/event-stream"},
    )

    assert r.status_code == 200
    assert "finish" not in r.text
    assert provider.call_names().count("get_run_status") == 5


def test_stream_recovers_from_deleted_provider_assistant(client, headers, provider, assistant, session):
    conversation_store.update_assistant_config(session, assistant, "missing_asst")

    r = client.post("/api/chat/stream", json={"message": "hi", "assistantId": ASSISTANT_ID}, headers=headers)

    assert r.status_code == 200
    assert r.text == provider.answer
    assert provider.call_names()[:2] == ["get_assistant", "create_assistant"]
    start_run = next(call for call in provider.calls if call[0] == "start_run")
    session.refresh(assistant)
    assert assistant.openai_assistant_id != "missing_asst"
    assert start_run[2] == assistant.openai_assistant_id


def test_client_disconnect_cancels_remote_run(client, provider, assistant, engine, monkeypatch):
    from chatwidget.config import settings

    monkeypatch.setattr(settings, "RUN_POLL_INTERVAL", 0.02)
    monkeypatch.setattr(settings, "RUN_MAX_POLLS", 1000)
    provider.statuses = ["in_progress"]
    body = json.dumps({"message": "hi", "assistantId": ASSISTANT_ID}).encode()
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/api/chat/stream",
        "raw_path": b"/api/chat/stream",
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"host", b"testserver"),
            (b"content-type", b"application/json"),
            (b"x-principal-id", PRINCIPAL.encode()),
        ],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }
    statuses = []

    async def _request_then_disconnect():
        gone = asyncio.Event()
        pending = [{"type": "http.request", "body": body, "more_body": False}]

        async def receive():
            if pending:
                return pending.pop()
            await gone.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            if message["type"] == "http.response.start":
                statuses.append(message["status"])

        task = asyncio.create_task(app(scope, receive, send))
        while provider.call_names().count("get_run_status") < 2:
            await asyncio.sleep(0.01)
        gone.set()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(_request_then_disconnect())

    assert statuses == [200]
    assert provider.call_names()[-1] == "cancel_run"
    assert provider.call_names().count("get_run_status") < 1000
    # Only the user turn was stored
    assert _count(engine, Message) == 1


def test_hidden_message_is_not_persisted(client, headers, provider, assistant):
    r = client.post(
        "/api/chat/stream",
        json={"message": "Greet the visitor", "assistantId": ASSISTANT_ID, "hiddenMessage": True},
        headers=headers,
    )

    assert r.status_code == 200
    r = client.get("/api/chat/messages", params={"thread_id": r.headers["x-thread-id"]}, headers=headers)
    assert [m["role"] for m in r.json()["messages"]] == ["assistant"]


def test_assistant_turn_storage_failure_is_not_surfaced(client, headers, provider, assistant, chat_service, monkeypatch):
    def broken_store(turn):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(chat_service, "_store_assistant_turn", broken_store)

    r = client.post("/api/chat/stream", json={"message": "hi", "assistantId": ASSISTANT_ID}, headers=headers)

    assert r.status_code == 200
    assert r.text == provider.answer


# ---------------------- Welcome / init ----------------------


def test_welcome_seeds_single_assistant_turn(client, headers, assistant):
    r = client.post("/api/chat/welcome", json={"assistantId": ASSISTANT_ID}, headers=headers)

    assert r.status_code == 201, r.text
    body = r.json()
    assert body["thread"]["title"] == "New Chat"
    assert body["message"]["role"] == "assistant"
    assert body["message"]["content"] == "Hi! Ask me anything about the product."

    r = client.get("/api/chat/messages", params={"thread_id": body["thread"]["id"]}, headers=headers)
    messages = r.json()["messages"]
    assert len(messages) == 1
    assert messages[0]["id"] == body["message"]["id"]


def test_welcome_then_stream_retitles_placeholder(client, headers, provider, assistant):
    r = client.post("/api/chat/welcome", json={"assistantId": ASSISTANT_ID}, headers=headers)
    thread_id = r.json()["thread"]["id"]

    r = client.post(
        "/api/chat/stream",
        json={"message": "hi", "assistantId": ASSISTANT_ID, "thread_id": thread_id},
        headers=headers,
    )
    assert r.status_code == 200

    r = client.get("/api/chat/messages", params={"thread_id": thread_id}, headers=headers)
    assert [m["role"] for m in r.json()["messages"]] == ["assistant", "user", "assistant"]
    r = client.get("/api/chat/threads", headers=headers)
    assert r.json()[0]["title"] == "Friendly greeting"


def test_welcome_unknown_assistant(client, headers):
    r = client.post("/api/chat/welcome", json={"assistantId": "nope"}, headers=headers)
    assert r.status_code == 404


def test_init_returns_threads_and_latest_messages(client, headers, assistant):
    client.post("/api/chat/welcome", json={"assistantId": ASSISTANT_ID}, headers=headers)
    r = client.post("/api/chat/welcome", json={"assistantId": ASSISTANT_ID}, headers=headers)
    latest_id = r.json()["thread"]["id"]

    r = client.get("/api/chat/init", params={"assistantId": ASSISTANT_ID}, headers=headers)

    assert r.status_code == 200
    body = r.json()
    assert len(body["threads"]) == 2
    assert body["threads"][0]["id"] == latest_id
    assert len(body["messages"]) == 1
    assert body["messages"][0]["thread_id"] == latest_id


def test_init_requires_assistant_id(client, headers):
    r = client.get("/api/chat/init", headers=headers)
    assert r.status_code == 400


# ---------------------- Threads / messages ----------------------


def test_create_and_rename_thread(client, headers, assistant):
    r = client.post("/api/chat/threads", json={"assistantId": ASSISTANT_ID}, headers=headers)
    assert r.status_code == 201
    thread = r.json()
    assert thread["title"] == "New Chat"

    r = client.patch(f"/api/chat/threads/{thread['id']}", json={"title": "  Shipping  "}, headers=headers)
    assert r.status_code == 200
    assert r.json()["title"] == "Shipping"
    assert r.json()["updated_at"] >= thread["updated_at"]


def test_rename_thread_errors(client, headers, assistant, engine):
    with Session(engine) as session:
        foreign_id = conversation_store.create_conversation(session, OTHER_PRINCIPAL, ASSISTANT_ID).id

    r = client.patch(f"/api/chat/threads/{foreign_id}", json={"title": "Mine now"}, headers=headers)
    assert r.status_code == 403
    r = client.patch("/api/chat/threads/missing", json={"title": "x"}, headers=headers)
    assert r.status_code == 404
    r = client.patch(f"/api/chat/threads/{foreign_id}", json={"title": "  "}, headers=headers)
    assert r.status_code == 400


def test_post_and_list_messages(client, headers, assistant):
    thread_id = client.post("/api/chat/threads", json={"assistantId": ASSISTANT_ID}, headers=headers).json()["id"]

    r = client.post(
        "/api/chat/messages",
        json={"thread_id": thread_id, "content": "First"},
        headers=headers,
    )
    assert r.status_code == 201
    assert r.json()["role"] == "user"
    assert r.json()["user_id"] == PRINCIPAL

    r = client.post(
        "/api/chat/messages",
        json={"thread_id": thread_id, "content": "Reply", "role": "assistant", "metadata": {"source": "import"}},
        headers=headers,
    )
    assert r.status_code == 201
    assert r.json()["assistant_id"] == ASSISTANT_ID
    assert r.json()["user_id"] is None

    r = client.get("/api/chat/messages", params={"thread_id": thread_id}, headers=headers)
    messages = r.json()["messages"]
    assert [(m["role"], m["content"]) for m in messages] == [("user", "First"), ("assistant", "Reply")]
    assert messages[1]["metadata"] == {"source": "import"}


def test_post_message_rejects_bad_input(client, headers, assistant, engine):
    thread_id = client.post("/api/chat/threads", json={"assistantId": ASSISTANT_ID}, headers=headers).json()["id"]

    r = client.post("/api/chat/messages", json={"thread_id": thread_id, "content": ""}, headers=headers)
    assert r.status_code == 400
    r = client.post(
        "/api/chat/messages",
        json={"thread_id": thread_id, "content": "...", "role": "assistant", "metadata": {"thinking": True}},
        headers=headers,
    )
    assert r.status_code == 400
    r = client.post("/api/chat/messages", json={"content": "no thread"}, headers=headers)
    assert r.status_code == 400
    assert _count(engine, Message) == 0


def test_messages_of_foreign_thread_are_denied(client, headers, assistant, engine):
    with Session(engine) as session:
        foreign_id = conversation_store.create_conversation(session, OTHER_PRINCIPAL, ASSISTANT_ID).id

    r = client.get("/api/chat/messages", params={"thread_id": foreign_id}, headers=headers)
    assert r.status_code == 403
    r = client.post("/api/chat/messages", json={"thread_id": foreign_id, "content": "hi"}, headers=headers)
    assert r.status_code == 403
    assert _count(engine, Message) == 0


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
