"""Tests for tab title generation."""

import asyncio

import pytest
from claude_agent_sdk.types import AssistantMessage, TextBlock

from chatdesk.chat.naming import TITLE_MAX_CHARS, TabNamer, clean_title, quick_title


class FakeNamingClient:
    """Stands in for the SDK client; replies with a fixed text."""

    def __init__(self, options, reply="Fix login bug", delay=0.0, fail=None):
        self.options = options
        self.reply = reply
        self.delay = delay
        self.fail = fail
        self.connected = False
        self.queries = []

    async def connect(self):
        self.connected = True

    async def disconnect(self):
        self.connected = False

    async def query(self, prompt):
        if self.fail is not None:
            raise self.fail
        self.queries.append(prompt)

    async def receive_response(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        yield AssistantMessage(content=[TextBlock(text=self.reply)], model="haiku")


def factory(clients, **kwargs):
    def build(options):
        client = FakeNamingClient(options, **kwargs)
        clients.append(client)
        return client

    return build


class TestCleanTitle:
    """Tests for title cleanup helpers."""

    def test_strips_quotes_and_extra_lines(self):
        """Quotes and anything after the first line are removed."""
        assert clean_title('"Refactor parser"\nextra') == "Refactor parser"
        assert clean_title("  `Deploy fix`  ") == "Deploy fix"

    def test_length_cap(self):
        """Titles are capped."""
        assert len(clean_title("x" * 100)) == TITLE_MAX_CHARS

    @pytest.mark.parametrize("raw", [None, "", '""', "   "])
    def test_empty(self, raw):
        """Empty replies give no title."""
        assert clean_title(raw) is None

    def test_quick_title(self):
        """The prompt's first line, shortened with an ellipsis."""
        assert quick_title("fix the tests\nthey fail on CI") == "fix the tests"
        long = quick_title("a" * 60)
        assert long.endswith("...")
        assert len(long) == TITLE_MAX_CHARS


class TestTabNamer:
    """Tests for TabNamer."""

    @pytest.mark.asyncio
    async def test_generate(self):
        """The reply is cleaned and the client is reused."""
        clients = []
        namer = TabNamer(model="haiku", client_factory=factory(clients, reply="'Fix login bug'"))

        assert await namer.generate("the login form crashes") == "Fix login bug"
        assert await namer.generate("another") == "Fix login bug"
        assert len(clients) == 1
        assert clients[0].options.model == "haiku"
        assert clients[0].queries[0] == 'Title for: "the login form crashes"'

        await namer.stop()
        assert not clients[0].connected

    @pytest.mark.asyncio
    async def test_timeout_drops_client(self):
        """A slow reply gives no title and the client is replaced next time."""
        clients = []
        namer = TabNamer(timeout=0.01, client_factory=factory(clients, delay=1.0))

        assert await namer.generate("slow") is None
        assert not clients[0].connected
        await namer.generate("again")
        assert len(clients) == 2
        await namer.stop()

    @pytest.mark.asyncio
    async def test_failure_gives_no_title(self):
        """Errors from the client are swallowed into None."""
        clients = []
        namer = TabNamer(client_factory=factory(clients, fail=RuntimeError("offline")))
        assert await namer.generate("hello") is None
        assert not clients[0].connected
