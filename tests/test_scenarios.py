"""Tests for mcp_e2e.scenarios: file loading, placeholders, target URL."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from mcp_e2e.scenarios import (
    Scenario,
    extract_first_url,
    load_scenario_file,
    load_scenarios,
    prepare_scenario,
    resolve_placeholders,
    split_steps,
)


def _write(path: Path, content: str) -> Path:
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


class TestResolvePlaceholders:
    def test_variables_first(self) -> None:
        out = resolve_placeholders("user ${crm.username}", {"crm.username": "alice"}, {"CRM_USERNAME": "bob"})
        assert out == "user alice"

    def test_env_upper_cased_name(self) -> None:
        assert resolve_placeholders("${crm.password}", {}, {"CRM_PASSWORD": "s3cret"}) == "s3cret"

    def test_dash_becomes_underscore(self) -> None:
        assert resolve_placeholders("${app-host}", {}, {"APP_HOST": "h"}) == "h"

    def test_unresolved_left_in_place(self) -> None:
        assert resolve_placeholders("go ${nowhere}", {}, {}) == "go ${nowhere}"

    def test_no_placeholders(self) -> None:
        assert resolve_placeholders("Click Next", {}, {}) == "Click Next"


class TestExtractFirstUrl:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Open https://crm.example.test/login.", "https://crm.example.test/login"),
            ("Go to (http://localhost:3000/app)", "http://localhost:3000/app"),
            ("first http://a.test then https://b.test", "http://a.test"),
            ("no url here", None),
        ],
    )
    def test_extract(self, text: str, expected: str | None) -> None:
        assert extract_first_url(text) == expected


class TestSplitSteps:
    def test_drops_blank_comments_and_quotes(self) -> None:
        text = '# login flow\n\n"Open the page"\n  Click Next  \n'
        assert split_steps(text) == ["Open the page", "Click Next"]


class TestLoadScenarioFile:
    def test_text_file(self, tmp_path: Path) -> None:
        f = _write(tmp_path / "login.txt", "Open https://x.test\nClick Sign in\n")
        [scenario] = load_scenario_file(f)
        assert scenario.name == "login"
        assert scenario.steps == ["Open https://x.test", "Click Sign in"]
        assert scenario.source == f
        assert scenario.task == "Open https://x.test\nClick Sign in"

    def test_empty_text_file_rejected(self, tmp_path: Path) -> None:
        f = _write(tmp_path / "empty.txt", "# only a comment\n")
        with pytest.raises(ValueError, match="no instructions"):
            load_scenario_file(f)

    def test_single_yaml(self, tmp_path: Path) -> None:
        f = _write(
            tmp_path / "checkout.yaml",
            """\
            name: checkout
            url: https://shop.test
            steps:
              - Add the first item to the cart
              - Open the cart
            """,
        )
        [scenario] = load_scenario_file(f)
        assert scenario == Scenario(
            name="checkout",
            steps=["Add the first item to the cart", "Open the cart"],
            url="https://shop.test",
            source=f,
        )

    def test_yaml_suite_with_string_steps(self, tmp_path: Path) -> None:
        f = _write(
            tmp_path / "suite.yml",
            """\
            scenarios:
              - name: a
                steps: |
                  Open the page
                  Click Next
              - steps: [Only step]
            """,
        )
        scenarios = load_scenario_file(f)
        assert [s.name for s in scenarios] == ["a", "suite-2"]
        assert scenarios[0].steps == ["Open the page", "Click Next"]
        assert scenarios[1].steps == ["Only step"]

    def test_yaml_without_steps_rejected(self, tmp_path: Path) -> None:
        f = _write(tmp_path / "bad.yaml", "name: nothing\n")
        with pytest.raises(ValueError, match="no steps"):
            load_scenario_file(f)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_scenario_file(tmp_path / "nope.txt")


class TestLoadScenarios:
    def test_directory_sorted_and_filtered(self, tmp_path: Path) -> None:
        _write(tmp_path / "b.txt", "Step b\n")
        _write(tmp_path / "a.yaml", "steps: [Step a]\n")
        _write(tmp_path / "notes.md", "ignored\n")
        scenarios = load_scenarios(tmp_path)
        assert [s.name for s in scenarios] == ["a", "b"]

    def test_argument_order_kept(self, tmp_path: Path) -> None:
        b = _write(tmp_path / "b.txt", "Step b\n")
        a = _write(tmp_path / "a.txt", "Step a\n")
        assert [s.name for s in load_scenarios(b, a)] == ["b", "a"]


class TestPrepareScenario:
    def test_resolves_placeholders(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CRM_USERNAME", "alice")
        s = prepare_scenario(Scenario("login", ["Fill ${crm.username} into Email"]), app_url="https://crm.test")
        assert s.steps == ["Fill alice into Email"]

    def test_scenario_url_wins(self) -> None:
        s = prepare_scenario(Scenario("x", ["Open https://steps.test"], url="https://own.test"), app_url="https://app.test")
        assert s.url == "https://own.test"

    def test_app_url_before_steps(self) -> None:
        s = prepare_scenario(Scenario("x", ["Open https://steps.test"]), app_url="https://app.test")
        assert s.url == "https://app.test"

    def test_blank_app_url_falls_back_to_steps(self) -> None:
        s = prepare_scenario(Scenario("x", ["Open https://steps.test/home"]), app_url="about:blank")
        assert s.url == "https://steps.test/home"

    def test_url_from_resolved_placeholder(self) -> None:
        s = prepare_scenario(Scenario("x", ["Open ${base}/login"]), variables={"base": "https://v.test"})
        assert s.url == "https://v.test/login"

    def test_no_url_anywhere(self) -> None:
        assert prepare_scenario(Scenario("x", ["Click Next"])).url is None

    def test_original_untouched(self) -> None:
        original = Scenario("x", ["Open ${base}"])
        prepare_scenario(original, variables={"base": "https://v.test"})
        assert original.steps == ["Open ${base}"]
