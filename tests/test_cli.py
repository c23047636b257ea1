import json

from typer.testing import CliRunner

from bonsai.cli import cli_app
from bonsai.core.config import settings

runner = CliRunner()


def test_compile(tmp_path):
    path = tmp_path / "story.json"
    path.write_text(json.dumps({"lines": [
        {"id": "a", "text": "# A", "indent": 0},
        {"id": "b", "text": "- hello", "indent": 0},
    ]}), encoding="utf-8")

    result = runner.invoke(cli_app, ["compile", str(path)])
    assert result.exit_code == 0
    structure = json.loads(result.stdout)
    assert structure["start_scene"] == "A"
    assert structure["scenes"][0]["lines"][0]["text"] == "hello"


def test_play_sample_story(monkeypatch):
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")
    result = runner.invoke(cli_app, ["play"], input="sail\n")
    assert result.exit_code == 0
    assert "The fire burns brightly." in result.stdout
    assert "  * Ride a bike" in result.stdout
    assert result.stdout.rstrip().endswith("END")
