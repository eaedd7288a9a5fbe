"""End-to-end tests for the interpreter."""

from unittest.mock import MagicMock, patch

import pytest
import yaml

from config.types import RuntimeSettings
from workflow_runtime.interpreter import Interpreter, create_interpreter
from workflow_tools.directory import InMemoryCapabilityDirectory
from workflow_tools.interfaces import InMemoryOutbox


def write_document(root, relative, content):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(content, sort_keys=False))
    return path


@pytest.fixture
def settings(tmp_path):
    return RuntimeSettings(documents_root=str(tmp_path), auto_generation_enabled=False)


@pytest.fixture
def outbox():
    return InMemoryOutbox()


@pytest.fixture
def interpreter(settings, outbox):
    return Interpreter(settings, channel=outbox)


class TestRun:
    """Running operations and sub-workflows."""

    @pytest.mark.asyncio
    async def test_sub_workflow_with_input(self, tmp_path, interpreter):
        write_document(
            tmp_path,
            "flow.yaml",
            {
                "self": {"id": "flow"},
                "operations": {
                    "op1": [{"run": {"file": "flow.yaml", "operation": "op2", "input": {"x": 5}}}],
                    "op2": [
                        {"set_memory": {"y": "${input.x} plus one"}},
                        {"return": "${memory.y}"},
                    ],
                },
            },
        )

        result = await interpreter.run("flow.yaml", "op1")

        assert result.success, result.error
        assert result.result == "5 plus one"
        assert [entry.step for entry in result.trace] == ["run"]
        assert [child.step for child in result.trace[0].children] == ["set_memory", "return"]

    @pytest.mark.asyncio
    async def test_sub_workflow_shares_memory_with_caller(self, tmp_path, interpreter):
        write_document(
            tmp_path,
            "flow.yaml",
            {
                "operations": {
                    "parent": [
                        {"set_memory": {"secret": "s"}},
                        {"run": {"file": "flow.yaml", "operation": "child"}},
                        {"return": "${memory.from_child}"},
                    ],
                    "child": [
                        {"set_memory": {"from_child": "${secret} back"}},
                        {
                            "return": {
                                "secret": "${secret}",
                                "user": "${input.user}",
                                "parent": "${metadata.parent_execution_id}",
                            }
                        }
                    ],
                },
            },
        )

        result = await interpreter.run("flow.yaml", "parent", input={"user": "alice"})

        assert result.success, result.error
        assert result.result == "s back"
        child = result.trace[1].output
        assert child["secret"] == "s"
        assert child["user"] == "alice"
        assert child["parent"] == result.context.execution_id
        assert result.context.memory["execution_id"] == result.context.execution_id

    @pytest.mark.asyncio
    async def test_agent_id_defaults_to_file_stem(self, tmp_path, interpreter):
        write_document(tmp_path, "nameless.yaml", {"operations": {"default": [{"return": "${agentId}"}]}})
        result = await interpreter.run("nameless.yaml")
        assert result.result == "nameless"

    @pytest.mark.asyncio
    async def test_missing_document(self, interpreter):
        result = await interpreter.run("nope.yaml")
        assert not result.success
        assert "not found" in result.error
        assert result.trace == []

    @pytest.mark.asyncio
    async def test_missing_operation(self, tmp_path, interpreter):
        write_document(tmp_path, "doc.yaml", {"operations": {"default": []}})
        result = await interpreter.run("doc.yaml", "other")
        assert not result.success
        assert "other" in result.error

    @pytest.mark.asyncio
    async def test_failed_step_returns_trace(self, tmp_path, interpreter):
        write_document(
            tmp_path,
            "doc.yaml",
            {"operations": {"default": [{"return": 1}, {"missing.capability": {}}, {"return": 2}]}},
        )

        result = await interpreter.run("doc.yaml")

        assert not result.success
        assert "missing.capability" in result.error
        assert [entry.success for entry in result.trace] == [True, False]

    @pytest.mark.asyncio
    async def test_respond_reaches_channel(self, tmp_path, interpreter, outbox):
        write_document(tmp_path, "doc.yaml", {"operations": {"default": [{"respond": "hi ${input.user}"}]}})

        result = await interpreter.run("doc.yaml", input={"user": "bob"})

        assert result.success, result.error
        assert outbox.messages == [{"kind": "message", "to": "bob", "text": "hi bob"}]


class TestPathResolution:
    @pytest.mark.asyncio
    async def test_heuristic_search_under_prefixes(self, tmp_path, interpreter):
        write_document(tmp_path, "agents/greeter.yaml", {"operations": {"default": [{"return": "hello"}]}})

        result = await interpreter.run("greeter")

        assert result.success, result.error
        assert result.result == "hello"

    @pytest.mark.asyncio
    async def test_client_directory_first(self, tmp_path, interpreter):
        write_document(tmp_path, "greeter.yaml", {"operations": {"default": [{"return": "shared"}]}})
        write_document(tmp_path, "clients/acme/greeter.yaml", {"operations": {"default": [{"return": "acme"}]}})

        shared = await interpreter.run("greeter")
        scoped = await interpreter.run("greeter", client_id="acme")

        assert shared.result == "shared"
        assert scoped.result == "acme"

    @pytest.mark.asyncio
    async def test_directory_assisted_resolution(self, tmp_path, settings):
        write_document(tmp_path, "system/real.yaml", {"operations": {"default": [{"return": "real"}]}})
        directory = InMemoryCapabilityDirectory({"file_resolution_alias": "system/real.yaml"})
        interpreter = Interpreter(settings, directory=directory)

        result = await interpreter.run("alias")

        assert result.result == "real"

    @pytest.mark.asyncio
    async def test_stale_directory_entry_falls_back(self, tmp_path, settings):
        write_document(tmp_path, "doc.yaml", {"operations": {"default": [{"return": "literal"}]}})
        directory = InMemoryCapabilityDirectory({"file_resolution_doc.yaml": "gone.yaml"})
        interpreter = Interpreter(settings, directory=directory)

        path = await interpreter.resolve_document_path("doc.yaml")

        assert path == str(tmp_path / "doc.yaml")

    @pytest.mark.asyncio
    async def test_agent_and_system_operations(self, tmp_path, interpreter):
        write_document(tmp_path, "agents/bot.yaml", {"operations": {"ping": [{"return": "pong"}]}})
        write_document(tmp_path, "main-system.yaml", {"operations": {"status": [{"return": "up"}]}})

        agent = await interpreter.run_agent_operation("bot", "ping")
        system = await interpreter.run_system_operation("status")

        assert agent.result == "pong"
        assert system.result == "up"


class TestConcerns:
    @pytest.mark.asyncio
    async def test_priority_order_and_failures_last(self, tmp_path, interpreter):
        for name, priority in (("low", 1), ("high", 5)):
            write_document(
                tmp_path,
                f"{name}.yaml",
                {
                    "operations": {},
                    "concern": {
                        "if": "${input.errors} > 3",
                        "priority": priority,
                        "action": [{"return": f"{name} handled"}],
                    },
                },
            )

        results = await interpreter.check_concerns(["low.yaml", "high.yaml", "missing.yaml"], input={"errors": 5})

        assert [r.file for r in results] == ["high.yaml", "low.yaml", "missing.yaml"]
        assert results[0].triggered
        assert results[0].result.result == "high handled"
        assert results[2].error is not None

    @pytest.mark.asyncio
    async def test_untriggered_concern(self, tmp_path, interpreter):
        write_document(
            tmp_path,
            "doc.yaml",
            {"operations": {}, "concern": {"if": "${input.errors} > 3", "priority": 1, "action": []}},
        )
        assert await interpreter.check_concern("doc.yaml", input={"errors": 1}) is None

    @pytest.mark.asyncio
    async def test_document_without_concern(self, tmp_path, interpreter):
        write_document(tmp_path, "doc.yaml", {"operations": {}})
        assert await interpreter.check_concern("doc.yaml") is None


class TestSelfModification:
    @pytest.mark.asyncio
    async def test_modify_adds_operation_and_records_revision(self, tmp_path, interpreter):
        path = write_document(
            tmp_path,
            "agent.yaml",
            {
                "self": {"id": "evolving"},
                "operations": {
                    "evolve": [
                        {"self.modify": {"changes": {"operations": {"extra": [{"return": "added"}]}}}}
                    ]
                },
            },
        )

        evolved = await interpreter.run("agent.yaml", "evolve")
        extra = await interpreter.run("agent.yaml", "extra")

        assert evolved.success, evolved.error
        assert evolved.result["modified"] is True
        assert extra.result == "added"
        assert [r.action for r in interpreter.revisions.history(path)] == ["baseline", "commit"]

    @pytest.mark.asyncio
    async def test_invalid_modification_leaves_document(self, tmp_path, interpreter):
        path = write_document(
            tmp_path,
            "agent.yaml",
            {"operations": {"break": [{"self.modify": {"changes": {"operations": {"bad": "not-a-list"}}}}]}},
        )
        before = path.read_text()

        result = await interpreter.run("agent.yaml", "break")

        assert not result.success
        assert path.read_text() == before


class TestAutoGeneration:
    @pytest.mark.asyncio
    async def test_missing_capability_is_generated_and_called(self, tmp_path, outbox):
        settings = RuntimeSettings(documents_root=str(tmp_path))
        interpreter = create_interpreter(settings, channel=outbox)
        write_document(
            tmp_path,
            "doc.yaml",
            {"operations": {"default": [{"weather.get_forecast": {"city": "Oslo"}}]}},
        )
        response = MagicMock(status_code=200)
        response.json.return_value = {"forecast": "rain"}

        with patch("workflow_tools.service_template.requests.request", return_value=response) as request:
            first = await interpreter.run("doc.yaml", input={"channel": "ops"})
            second = await interpreter.run("doc.yaml")

        assert first.success, first.error
        assert first.result["data"] == {"forecast": "rain"}
        assert first.result["_auto_generated"] is True
        assert "_auto_generated" not in second.result
        assert interpreter.resolver.generation_count == 1
        assert (tmp_path / ".generated" / "weather.py").is_file()
        assert request.call_args.args[0] == "GET"
        assert request.call_args.kwargs["params"] == {"city": "Oslo"}
        assert any("Auto-generation triggered" in m["text"] for m in outbox.messages)

        record = await interpreter.directory.resolve_capability("weather_get_forecast")
        assert record.confidence == 0.8

    @pytest.mark.asyncio
    async def test_disabled_generation_fails_the_step(self, tmp_path, interpreter):
        write_document(tmp_path, "doc.yaml", {"operations": {"default": [{"weather.get_forecast": {}}]}})

        result = await interpreter.run("doc.yaml")

        assert not result.success
        assert "not found" in result.error
        assert interpreter.resolver.generation_count == 0


class TestCreateInterpreter:
    def test_environment_settings_configure_logging(self, tmp_path):
        settings = RuntimeSettings(documents_root=str(tmp_path), log_level="DEBUG")
        env = MagicMock()
        env.load.return_value.get_runtime_settings.return_value = settings

        with patch("config.manager.env_manager", env), patch(
            "workflow_runtime.interpreter.configure_logging"
        ) as configure:
            interpreter = create_interpreter()

        configure.assert_called_once_with("DEBUG")
        assert interpreter.settings is settings

    def test_explicit_settings_leave_logging_alone(self, settings):
        with patch("workflow_runtime.interpreter.configure_logging") as configure:
            create_interpreter(settings)
        configure.assert_not_called()


class TestHealth:
    def test_health_reports_components(self, tmp_path, interpreter):
        health = interpreter.health()
        assert health["documents_root"] is True
        assert health["context_creation"] is True
        assert health["registry"]["module_count"] == 7
        assert health["auto_generation"] is False
