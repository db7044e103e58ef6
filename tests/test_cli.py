"""Tests for the voicejournal command line."""

import json

import pytest
from typer.testing import CliRunner

from voicejournal import cli
from voicejournal.config import JournalConfig, load_config, save_config
from voicejournal.workspace import WorkspaceRouter

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_state(monkeypatch):
    """CLI options live in module globals; reset them between tests."""
    for name in (
        "VOICEJOURNAL_STORE_PATH",
        "VOICEJOURNAL_AI_API_BASE_URL",
        "VOICEJOURNAL_AI_API_TOKEN",
        "VOICEJOURNAL_MAX_ATTEMPTS",
        "VOICEJOURNAL_REQUEST_TIMEOUT",
        "VOICEJOURNAL_WORKSPACE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(cli, "_json_output", False)
    monkeypatch.setattr(cli, "_store_override", None)
    monkeypatch.setattr(cli, "_workspace_override", None)


@pytest.fixture
def store(tmp_path):
    path = tmp_path / "store"
    config = JournalConfig(path=path)
    config.workspaces.names = ["professional", "personal"]
    config.workspaces.default = "professional"
    save_config(config)
    return path


def invoke(store, *args):
    return runner.invoke(cli.app, ["--store", str(store), *args])


def _add(store, audio_file, *extra) -> str:
    result = invoke(store, "add", str(audio_file), "--duration", "42", *extra)
    assert result.exit_code == 0, result.output
    return result.output.strip().splitlines()[-1]


class TestEntries:
    def test_add_queues_transcription(self, store, audio_file):
        entry_id = _add(store, audio_file)
        assert entry_id.startswith("entry-")

        result = invoke(store, "--json", "show", entry_id)
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["ai_status"] == "queued"
        assert data["duration_sec"] == 42
        assert [(j["type"], j["status"]) for j in data["jobs"]] == [("transcribe", "queued")]

    def test_add_without_queue(self, store, audio_file):
        entry_id = _add(store, audio_file, "--no-queue")
        result = invoke(store, "jobs", "--status", "queued")
        assert entry_id not in result.output

    def test_add_missing_audio(self, store, tmp_path):
        result = invoke(store, "add", str(tmp_path / "missing.m4a"))
        assert result.exit_code == 1
        assert "audio file not found" in result.output

    def test_list(self, store, audio_file):
        entry_id = _add(store, audio_file)
        result = invoke(store, "list")
        assert result.exit_code == 0
        assert entry_id in result.output
        assert "0:42" in result.output

        result = invoke(store, "--json", "list")
        assert [e["id"] for e in json.loads(result.stdout)] == [entry_id]

    def test_show_missing(self, store):
        result = invoke(store, "show", "entry-missing")
        assert result.exit_code == 1
        assert "Not found" in result.output

    def test_delete(self, store, audio_file):
        entry_id = _add(store, audio_file)
        assert invoke(store, "delete", entry_id).exit_code == 0
        assert invoke(store, "delete", entry_id).exit_code == 1

    def test_search(self, store, audio_file):
        entry_id = _add(store, audio_file)
        router = WorkspaceRouter(store, workspaces=("professional", "personal"))
        router.resolve().entries.update_entry(entry_id, transcript="Call the dentist")
        router.close()

        assert entry_id in invoke(store, "search", "dentist").output
        assert entry_id not in invoke(store, "search", "groceries").output

    def test_insights(self, store, audio_file):
        entry_id = _add(store, audio_file)
        router = WorkspaceRouter(store, workspaces=("professional", "personal"))
        ws = router.resolve()
        ws.entries.update_entry(entry_id, summary="Garden planning\n- garden beds")
        ws.entries.attach_tag(entry_id, ws.entries.create_tag("garden").id)
        router.close()

        result = invoke(store, "--json", "insights")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["themes"][0]["entry_ids"] == [entry_id]
        assert data["themes"][0]["theme"].startswith("garden")
        assert data["weekly_counts"][0]["count"] == 1
        assert data["top_tags"][0]["tag_name"] == "garden"

    def test_export(self, store, audio_file, tmp_path):
        entry_id = _add(store, audio_file)
        out = tmp_path / "export.json"
        result = invoke(store, "export", "--output", str(out))
        assert result.exit_code == 0
        data = json.loads(out.read_text())
        assert [e["id"] for e in data["entries"]] == [entry_id]
        assert data["ai_jobs"][0]["type"] == "transcribe"


class TestQueueCommands:
    def test_enqueue_duplicate(self, store, audio_file):
        entry_id = _add(store, audio_file)
        result = invoke(store, "enqueue", entry_id)
        assert result.exit_code == 0
        assert "Already queued" in result.output

    def test_enqueue_unknown_type(self, store, audio_file):
        entry_id = _add(store, audio_file, "--no-queue")
        result = invoke(store, "enqueue", entry_id, "--type", "translate")
        assert result.exit_code == 1
        assert "Unknown job type" in result.output

    def test_enqueue_missing_entry(self, store):
        result = invoke(store, "enqueue", "entry-missing")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_jobs_stats(self, store, audio_file):
        _add(store, audio_file)
        result = invoke(store, "--json", "jobs")
        stats = json.loads(result.stdout)
        assert stats["queued"] == 1
        assert stats["total"] == 1

    def test_jobs_invalid_status(self, store):
        result = invoke(store, "jobs", "--status", "pending")
        assert result.exit_code == 1

    def test_retry_failed_jobs(self, store, audio_file):
        entry_id = _add(store, audio_file)
        router = WorkspaceRouter(store, workspaces=("professional", "personal"))
        queue = router.resolve().queue
        queue.requeue_or_fail(queue.claim_next_queued_job(), "HTTP 503", max_attempts=1)
        router.close()

        result = invoke(store, "retry")
        assert result.exit_code == 0
        assert "Queued 1 job(s) for retry." in result.output

        result = invoke(store, "--json", "show", entry_id)
        data = json.loads(result.stdout)
        assert data["ai_status"] == "queued"
        assert sorted(j["status"] for j in data["jobs"]) == ["error", "queued"]

    def test_process_storage_error_exits_nonzero(self, store, audio_file, monkeypatch):
        _add(store, audio_file)
        monkeypatch.setenv("VOICEJOURNAL_AI_API_BASE_URL", "http://127.0.0.1:8787/ai")

        async def aborted_run(self, workspace=None):
            return {
                "workspace": "professional", "processed": 0, "failed": 0,
                "abandoned": 0, "errors": ["storage: database is locked"],
                "skipped": False, "aborted": True,
            }

        monkeypatch.setattr(cli.AiWorker, "run", aborted_run)
        result = invoke(store, "process")
        assert result.exit_code == 1
        assert "professional: 0 processed" in result.output

    def test_process_without_backend(self, store, audio_file):
        _add(store, audio_file)
        result = invoke(store, "process")
        assert result.exit_code == 1
        assert "Missing AI backend base URL" in result.output


class TestWorkspaces:
    def test_list_workspaces(self, store):
        result = invoke(store, "workspace")
        assert result.exit_code == 0
        assert "* professional" in result.output
        assert "  personal" in result.output

    def test_switch_workspace_persists(self, store, audio_file):
        result = invoke(store, "workspace", "personal")
        assert result.exit_code == 0
        assert load_config(store).workspaces.default == "personal"

        entry_id = _add(store, audio_file)
        router = WorkspaceRouter(store, workspaces=("professional", "personal"))
        assert router.resolve("personal").entries.get_entry(entry_id) is not None
        assert router.resolve("professional").entries.get_entry(entry_id) is None
        router.close()

    def test_switch_to_unknown(self, store):
        result = invoke(store, "workspace", "nowhere")
        assert result.exit_code == 1
        assert load_config(store).workspaces.default == "professional"

    def test_workspace_option(self, store, audio_file):
        entry_id = _add(store, audio_file)
        result = invoke(store, "--workspace", "personal", "list")
        assert entry_id not in result.output

    def test_unknown_workspace_option(self, store):
        result = invoke(store, "--workspace", "nowhere", "list")
        assert result.exit_code == 1
        assert "Unknown workspace" in result.output
