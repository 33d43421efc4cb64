"""Tests for CLI module."""
import json
import subprocess
import sys
from unittest.mock import patch

import pytest

from skos_browser import cli, config
from skos_browser._version import __version__
from skos_browser.capabilities import CapabilityDescriptor

VOCABULARY = """
@prefix skos: <http://www.w3.org/2004/02/skos/core#> .
@prefix ex: <http://example.org/> .

ex:s a skos:ConceptScheme .
ex:c1 a skos:Concept ; skos:inScheme ex:s ; skos:prefLabel "One"@en .
ex:c2 a skos:Concept ; skos:inScheme ex:s ; skos:broader ex:c1 ; skos:prefLabel "Two"@en .
ex:o1 a skos:Concept .
"""


def run_main(argv, tmp_path, monkeypatch):
    """Run the CLI with an isolated config search path."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(sys, "argv", ["skos-browser", *argv])
    with patch.object(config, "_get_config_dirs", return_value=[tmp_path]):
        return cli.main()


class TestVersion:
    """Tests for --version option."""

    def test_version_option_exits_with_version(self):
        """Test that --version prints version and exits."""
        result = subprocess.run(
            [sys.executable, "-m", "skos_browser.cli", "--version"],
            capture_output=True,
            text=True,
        )
        assert result.returncode == 0
        assert __version__ in result.stdout


class TestComposeCommand:
    """Tests for compose command."""

    def test_compose_branches(self, tmp_path, monkeypatch, capsys):
        """Test printing the branches for a task from a capabilities file."""
        caps_file = tmp_path / "analysis.json"
        caps_file.write_text(json.dumps({"relationships": {"hasInScheme": True}}))

        result = run_main(
            ["--capabilities", str(caps_file), "compose", "top-concepts", "--scheme", "http://example.org/s"],
            tmp_path,
            monkeypatch,
        )

        out = capsys.readouterr().out
        assert result == 0
        assert out.startswith("structural: {")
        assert "skos:inScheme <http://example.org/s>" in out

    def test_compose_full_query(self, capsys):
        """Test printing the complete orphan query."""
        caps = CapabilityDescriptor(has_in_scheme=True)
        assert cli.compose_command(caps, "orphan-exclusion", show_query=True, page_size=10) == 0
        out = capsys.readouterr().out
        assert "FILTER NOT EXISTS" in out
        assert "LIMIT 11" in out

    def test_compose_unsupported(self, capsys):
        """Test a task the capabilities cannot answer."""
        assert cli.compose_command(CapabilityDescriptor(), "children", parent="http://example.org/c") == 1
        assert "unsupported" in capsys.readouterr().out

    def test_compose_missing_parameter(self, capsys):
        """Test a task without its required URI."""
        assert cli.compose_command(CapabilityDescriptor(has_broader=True), "children") == 1
        assert "requires a parent" in capsys.readouterr().err


class TestConfigCommand:
    """Tests for config command."""

    def test_config_shows_defaults(self, tmp_path, monkeypatch, capsys):
        """Test that config prints the merged defaults as JSON."""
        result = run_main(["config"], tmp_path, monkeypatch)

        out = capsys.readouterr().out
        assert result == 0
        assert "No configuration file found" in out
        data = json.loads(out.split("\n", 2)[2])
        assert data["orphans"]["strategy"] == "auto"

    def test_config_path(self, tmp_path, monkeypatch, capsys):
        """Test --path with a local config file."""
        (tmp_path / "skos-browser.json").write_text("{}")

        assert run_main(["config", "--path"], tmp_path, monkeypatch) == 0
        assert capsys.readouterr().out.strip().endswith("skos-browser.json")


class TestBrowseCommands:
    """Tests for commands that query data."""

    def test_no_endpoint(self, tmp_path, monkeypatch, capsys):
        """Test that browsing without an endpoint fails cleanly."""
        assert run_main(["top", "http://example.org/s"], tmp_path, monkeypatch) == 1
        assert "SPARQL endpoint required" in capsys.readouterr().err

    def test_top_from_local_file(self, tmp_path, monkeypatch, capsys):
        """Test top concepts from a Turtle file."""
        pytest.importorskip("pyoxigraph")
        data = tmp_path / "vocab.ttl"
        data.write_text(VOCABULARY)

        result = run_main(["--data", str(data), "--json", "top", "http://example.org/s"], tmp_path, monkeypatch)

        assert result == 0
        output = json.loads(capsys.readouterr().out)
        assert [item["uri"] for item in output["items"]] == ["http://example.org/c1"]
        assert output["items"][0]["label"] == "One"
        assert output["has_more"] is False

    def test_orphans_from_local_file(self, tmp_path, monkeypatch, capsys):
        """Test plain orphan URIs for one kind."""
        pytest.importorskip("pyoxigraph")
        data = tmp_path / "vocab.ttl"
        data.write_text(VOCABULARY)

        result = run_main(
            ["--data", str(data), "orphans", "--kind", "concept", "--strategy", "slow"], tmp_path, monkeypatch
        )

        assert result == 0
        assert capsys.readouterr().out.split() == ["http://example.org/o1"]

    def test_labels_from_local_file(self, tmp_path, monkeypatch, capsys):
        """Test label resolution output."""
        pytest.importorskip("pyoxigraph")
        data = tmp_path / "vocab.ttl"
        data.write_text(VOCABULARY)

        result = run_main(
            ["--data", str(data), "labels", "http://example.org/c2", "http://example.org/o1"], tmp_path, monkeypatch
        )

        assert result == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines == ["http://example.org/c2\tTwo@en", "http://example.org/o1\to1"]

    def test_members_from_local_file(self, tmp_path, monkeypatch, capsys):
        """Test listing collection members, marking ones from other schemes."""
        pytest.importorskip("pyoxigraph")
        data = tmp_path / "vocab.ttl"
        data.write_text(VOCABULARY + """
ex:x a skos:Concept ; skos:inScheme ex:other ; skos:prefLabel "Other"@en .
ex:col a skos:Collection ; skos:member ex:c1, ex:x .
""")

        result = run_main(
            ["--data", str(data), "members", "http://example.org/col", "--scheme", "http://example.org/s"],
            tmp_path,
            monkeypatch,
        )

        assert result == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines == [
            "+ One@en  <http://example.org/c1>",
            "  Other@en (in http://example.org/other)  <http://example.org/x>",
        ]
