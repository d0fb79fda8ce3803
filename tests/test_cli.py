"""Tests for the CLI - answers, rendering, completion and commands."""

import io
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from prompt_toolkit.document import Document
from rich.console import Console
from typer.testing import CliRunner

from chatdesk.chat.artifacts import AssistantText, PermissionCard, PlanCard, QuestionCard, ToolCard
from chatdesk.chat.broker import DENY_MESSAGE, PLAN_REJECT_MESSAGE, SESSION_BYPASS, PermissionRequest
from chatdesk.chat.events import ChatEvent, ChatEventType
from chatdesk.chat.registry import SlashCommandCache
from chatdesk.cli import commands
from chatdesk.cli.prompt import ChatCompleter
from chatdesk.cli.render import ChatRenderer, format_duration, permission_hint, times_table
from chatdesk.cli.shell import QUIT, ChatShell, decide
from chatdesk.config import ChatDeskConfig, Project
from chatdesk.transcript.reader import encode_project_path

QUESTIONS = {
    "questions": [
        {"question": "Color?", "options": [{"label": "Red"}, {"label": "Blue"}]},
        {"question": "Sizes?", "multiSelect": True, "options": [{"label": "S"}, {"label": "M"}, {"label": "L"}]},
        {"question": "Name?", "options": []},
    ]
}


def make_console():
    return Console(file=io.StringIO(), width=120, color_system=None)


def output(console):
    return console.file.getvalue()


class TestDecide:
    """Tests for turning typed answers into decisions."""

    @pytest.fixture
    def request_(self):
        return PermissionRequest("r1", "chat-1", "Bash", {"command": "ls"})

    @pytest.fixture
    def card(self):
        return PermissionCard(request_id="r1", tool_name="Bash", tool_input={"command": "ls"})

    def test_allow(self, card, request_):
        """y allows with the original input."""
        decision = decide(card, request_, "y")
        assert decision.allowed
        assert decision.updated_input == {"command": "ls"}

    def test_always_allow(self, card, request_):
        """a allows and switches the session to bypass without suggestions."""
        decision = decide(card, request_, "Always")
        assert decision.allowed
        assert decision.updated_permissions == [SESSION_BYPASS]

    def test_deny(self, card, request_):
        """n denies."""
        decision = decide(card, request_, "no")
        assert not decision.allowed
        assert decision.message == DENY_MESSAGE

    def test_plan_reject(self, request_):
        """Rejecting a plan uses the plan message."""
        card = PlanCard(request_id="r1", tool_name="ExitPlanMode", plan_text="1. do it")
        assert decide(card, request_, "n").message == PLAN_REJECT_MESSAGE

    @pytest.mark.parametrize("answer", ["", "maybe", "?"])
    def test_unrecognised(self, card, request_, answer):
        """Anything else needs another answer."""
        assert decide(card, request_, answer) is None

    def test_question_flow(self, request_):
        """One answer per question; the decision comes with the last."""
        card = QuestionCard(request_id="r1", tool_name="AskUserQuestion", tool_input=QUESTIONS)

        assert decide(card, request_, "") is None
        assert decide(card, request_, "3, 1") is None
        decision = decide(card, request_, "Widget")

        assert decision.allowed
        assert decision.updated_input["answers"] == {"Color?": "Red", "Sizes?": "S, L", "Name?": "Widget"}

    def test_question_out_of_range_is_custom_text(self, request_):
        """A number that is not an option is taken as the user's own answer."""
        card = QuestionCard(request_id="r1", tool_name="AskUserQuestion", tool_input=QUESTIONS)
        decide(card, request_, "7")
        assert card.answers == {"Color?": "7"}


class TestFormatting:
    """Tests for durations, hints and the time table."""

    @pytest.mark.parametrize(
        "ms, expected",
        [(3_900_000, "1h 05m"), (723_000, "12m 03s"), (45_000, "45s"), (999, "0s"), (-5, "0s")],
    )
    def test_format_duration(self, ms, expected):
        """Durations are shown at the two largest units."""
        assert format_duration(ms) == expected

    def test_permission_hint_is_escaped(self):
        """Key hints print literally."""
        console = make_console()
        console.print(permission_hint(PermissionCard(request_id="r1", tool_name="Bash")))
        console.print(permission_hint(PlanCard(request_id="r2", tool_name="ExitPlanMode")))
        text = output(console)
        assert "[y] allow" in text
        assert "[n] reject" in text
        assert "option numbers" in permission_hint(QuestionCard(request_id="r3", tool_name="AskUserQuestion"))

    def test_times_table(self):
        """Project rows and the all-projects row."""
        console = make_console()
        console.print(
            times_table(
                {"Alpha": {"today": 3_900_000, "total": 7_200_000}},
                {"today": 60_000, "week": 120_000, "month": 180_000},
            )
        )
        text = output(console)
        assert "Alpha" in text
        assert "1h 05m" in text
        assert "All projects" in text
        assert "week 2m 00s" in text


class TestChatRenderer:
    """Tests for ChatRenderer."""

    @pytest.fixture
    def console(self):
        return make_console()

    @pytest.fixture
    def renderer(self, console):
        return ChatRenderer(console)

    def test_streams_only_new_text(self, renderer, console):
        """Streaming text is printed incrementally and ended with a newline."""
        artifact = AssistantText(text="Hel")
        renderer.render(artifact, added=True)
        artifact.text = "Hello [world]"
        renderer.render(artifact)
        artifact.streaming = False
        renderer.render(artifact)
        assert output(console) == "Hello [world]\n"

    def test_tool_card_printed_once_when_complete(self, renderer, console):
        """Tool cards show once, with an output preview."""
        card = ToolCard(tool_use_id="t1", tool_name="Bash", detail="ls")
        renderer.render(card, added=True)
        assert output(console) == ""
        card.output = "a.py\nb.py"
        card.complete = True
        renderer.render(card)
        renderer.render(card)
        text = output(console)
        assert text.count("Bash") == 1
        assert "⎿ a.py" in text

    def test_permission_outcome(self, renderer, console):
        """A resolved card reports its outcome once."""
        card = PermissionCard(request_id="r1", tool_name="Bash", tool_input={"command": "rm -rf build"})
        renderer.render(card, added=True)
        assert "Permission needed" in output(console)
        card.mark_resolved("deny")
        renderer.render(card)
        renderer.render(card)
        assert output(console).count("denied") == 1

    def test_title_message(self, renderer, console):
        """Tab titles are shown as a divider line."""
        renderer(ChatEvent("chat-1", ChatEventType.MESSAGE, payload={"title": "Fix [login]"}))
        assert "Fix [login]" in output(console)


class TestChatCompleter:
    """Tests for ChatCompleter."""

    def completions(self, completer, text):
        return list(completer.get_completions(Document(text), None))

    def test_local_commands(self):
        """Local commands complete by prefix."""
        names = [c.text for c in self.completions(ChatCompleter(), "/st")]
        assert names == ["/stop", "/status"]

    def test_agent_commands(self):
        """Agent commands follow, without shadowing local ones."""
        cache = SlashCommandCache()
        cache.update(["compact", "status"])
        completions = self.completions(ChatCompleter(cache), "/")
        agent = [c for c in completions if c.display_meta_text == "agent"]
        assert [c.text for c in agent] == ["/compact"]

    @pytest.mark.parametrize("text", ["hello", "/mode pl", ""])
    def test_no_completion(self, text):
        """Only a bare command word completes."""
        assert self.completions(ChatCompleter(), text) == []


class TestChatShellCommands:
    """Tests for the shell's local commands."""

    @pytest.fixture
    def shell(self, tmp_path):
        config = ChatDeskConfig(claude_projects_dir=tmp_path)
        return ChatShell(config, console=make_console())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["/quit", "/EXIT"])
    async def test_quit(self, shell, text):
        """Quit commands end the loop."""
        assert await shell.command(text) == QUIT

    @pytest.mark.asyncio
    async def test_unknown_goes_to_agent(self, shell):
        """Commands the shell does not know are sent as prompts."""
        assert await shell.command("/review src") is False

    @pytest.mark.asyncio
    async def test_mode(self, shell):
        """Valid modes are applied; unknown ones are rejected."""
        assert await shell.command("/mode turbo") is True
        assert "Unknown mode" in output(shell.console)
        assert shell.mode == "default"

        await shell.command("/mode plan")
        assert shell.mode == "plan"

    @pytest.mark.asyncio
    async def test_mode_applies_to_session(self, shell):
        """Switching to alwaysAllow goes through the controller."""
        shell.controller = MagicMock()
        await shell.command("/mode alwaysAllow")
        shell.controller.set_always_allow.assert_called_once()

    @pytest.mark.asyncio
    async def test_status_and_stop_without_session(self, shell):
        """Status and stop are harmless before the first prompt."""
        assert await shell.command("/status") is True
        assert await shell.command("/stop") is True
        assert "No session yet" in output(shell.console)

    @pytest.mark.asyncio
    async def test_stop_interrupts(self, shell):
        """/stop interrupts the running turn."""
        shell.controller = MagicMock()
        shell.controller.interrupt = AsyncMock()
        await shell.command("/stop")
        shell.controller.interrupt.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_help_lists_agent_commands(self, shell):
        """Help shows local and agent commands."""
        shell.slash_commands.update(["compact"])
        await shell.command("/help")
        text = output(shell.console)
        assert "/quit" in text
        assert "/compact" in text

    @pytest.mark.asyncio
    async def test_time(self, shell):
        """/time prints the report, or a notice when tracking is off."""
        await shell.command("/time")
        assert "disabled" in output(shell.console)

        shell.config.projects = [Project(name="Alpha", path="/alpha")]
        shell.activity = MagicMock()
        shell.activity.project_times.return_value = {"today": 60_000, "total": 120_000}
        shell.activity.global_times.return_value = {"today": 60_000, "week": 60_000, "month": 60_000}
        await shell.command("/time")
        shell.activity.project_times.assert_called_once_with("alpha")
        assert "Alpha" in output(shell.console)


class TestTyperCommands:
    """Tests for the non-interactive commands."""

    @pytest.fixture
    def runner(self):
        return CliRunner()

    @pytest.fixture
    def config(self, tmp_path, monkeypatch):
        config = ChatDeskConfig(
            projects=[Project(name="Alpha", path=str(tmp_path))],
            projects_file=tmp_path / "projects.json",
            claude_projects_dir=tmp_path / "claude",
        )
        monkeypatch.setattr(commands, "load_config", lambda: config)
        return config

    def test_time_report(self, runner, config):
        """The report lists configured projects."""
        result = runner.invoke(commands.app, ["time"])
        assert result.exit_code == 0
        assert "Alpha" in result.output
        assert "All projects" in result.output

    def test_time_report_broken_file(self, runner, config):
        """A broken projects file is reported, not raised."""
        config.projects_file.write_text("{nope")
        result = runner.invoke(commands.app, ["time"])
        assert result.exit_code == 1
        assert "Cannot read time tracking" in result.output

    def test_sessions_empty(self, runner, config, tmp_path):
        """No index, no sessions."""
        result = runner.invoke(commands.app, ["sessions", str(tmp_path)])
        assert result.exit_code == 0
        assert "No stored sessions found" in result.output

    def test_sessions_listed(self, runner, config, tmp_path):
        """Stored sessions are shown in a table."""
        directory = config.claude_projects_dir / encode_project_path(str(tmp_path.resolve()))
        directory.mkdir(parents=True)
        (directory / "sessions-index.json").write_text(
            json.dumps({"entries": [{"sessionId": "abc123", "summary": "Fix login", "messageCount": 3}]})
        )
        result = runner.invoke(commands.app, ["sessions", str(tmp_path)])
        assert result.exit_code == 0
        assert "abc123" in result.output
        assert "Fix login" in result.output

    def test_history_missing(self, runner, config, tmp_path):
        """A missing transcript exits with an error."""
        result = runner.invoke(commands.app, ["history", "nope", str(tmp_path)])
        assert result.exit_code == 1
        assert "Cannot read transcript" in result.output

    def test_not_a_directory(self, runner, config, tmp_path):
        """Paths must be directories."""
        result = runner.invoke(commands.app, ["sessions", str(tmp_path / "missing")])
        assert result.exit_code == 1
        assert "Not a directory" in result.output

    @pytest.mark.parametrize("args", [["chat", "--mode", "turbo"], ["chat", "--fork-at", "u1"]])
    def test_chat_rejects_bad_options(self, runner, config, tmp_path, args):
        """Invalid option combinations exit before a session starts."""
        result = runner.invoke(commands.app, args + [str(tmp_path)])
        assert result.exit_code == 1
