"""
End-to-end tests for the command-line entry point, against a SQLite file.
"""

import json

import pytest
import yaml

import cli
from config_manager import ConfigManager


@pytest.fixture
def run(tmp_path, capsys):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({
        "registry": {"enabled": False},
        "logging": {"console": False, "level": "WARNING"},
    }), encoding="utf-8")
    db_url = f"sqlite:///{tmp_path / 'kyc.db'}"

    def _run(*argv):
        code = cli.main(["--config", str(config_path), "--database-url", db_url, "--no-log-file", *argv])
        captured = capsys.readouterr()
        if code == 0:
            return code, json.loads(captured.out)
        # Errors are a single JSON line at the end of stderr
        lines = [line for line in captured.err.splitlines() if line.strip()]
        return code, json.loads(lines[-1]) if lines else None

    ConfigManager.reset_instance()
    code, _ = _run("init-db")
    assert code == 0
    yield _run
    ConfigManager.reset_instance()


@pytest.fixture
def owner_id(run):
    code, user = run("create-user", "analyst@example.com", "--name", "Analyst")
    assert code == 0
    return user["id"]


class TestCli:

    def test_case_workflow(self, run, owner_id):
        owner = str(owner_id)

        code, case = run("create-case", "--owner", owner, "--company-name", "Muster GmbH",
                         "--risk-level", "high", "--customer-info", '{"contact": "Erika"}')
        assert code == 0
        assert case["case_number"].startswith("KYC-")
        case_id = str(case["id"])

        code, case = run("advance", "--owner", owner, case_id, "2")
        assert code == 0
        assert case["steps_completed"] == [2]

        code, check = run("run-check", "--owner", owner, case_id, "sanctions")
        assert code == 0
        assert check["status"] == "clear"
        assert check["risk_score"] == 5

        code, detail = run("show-case", "--owner", owner, case_id)
        assert code == 0
        assert detail["company_name"] == "Muster GmbH"
        assert detail["customer_info"] == {"contact": "Erika"}
        assert {c["check_type"]: c["status"] for c in detail["compliance_checks"]}["sanctions"] == "clear"

        code, listing = run("list-cases", "--owner", owner, "--risk-level", "high")
        assert code == 0
        assert listing["count"] == 1

        code, _ = run("set-status", "--owner", owner, case_id, "completed")
        assert code == 0

        code, overview = run("overview", "--owner", owner)
        assert code == 0
        assert overview["total_cases"] == 1
        assert overview["completion_rate"] == 1.0
        assert overview["pending_checks"] == 2
        assert overview["high_risk_cases"] == 1

    def test_search_company_demo_fallback_and_save(self, run, owner_id):
        code, result = run("search-company", "Beispielfirma")
        assert code == 0
        assert [r["source"] for r in result["results"]] == ["demo"]

        code, result = run("search-company", "Beispielfirma", "--owner", str(owner_id), "--save")
        assert code == 0
        assert result["saved"]["source"] == "demo"

    def test_health_and_reset(self, run, owner_id):
        code, health = run("health")
        assert code == 0
        assert health["healthy"] is True
        assert health["backend"] == "sqlite"

        code, result = run("init-db", "--reset")
        assert code == 0
        assert result["reset"] is True
        assert result["health"]["missing_tables"] == []

        code, _ = run("record-login", "analyst@example.com")
        assert code == cli.EXIT_NOT_FOUND

    def test_record_login(self, run, owner_id):
        code, result = run("record-login", "Analyst@Example.com")
        assert code == 0
        assert result["id"] == owner_id
        assert result["last_login_at"]

    def test_exit_codes(self, run, owner_id):
        code, error = run("advance", "--owner", str(owner_id), "1", "9")
        assert code == cli.EXIT_VALIDATION
        assert error["field"] == "step"

        code, error = run("show-case", "--owner", str(owner_id), "12345")
        assert code == cli.EXIT_NOT_FOUND
        assert error["message"] == "Case not found: 12345"

        code, error = run("create-user", "analyst@example.com")
        assert code == cli.EXIT_VALIDATION
        assert error["error"] == "DUPLICATE_EMAIL"

        code, error = run("search-company", "ab")
        assert code == cli.EXIT_VALIDATION
        assert error["error"] == "QUERY_TOO_SHORT"
