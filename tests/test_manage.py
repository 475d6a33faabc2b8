"""
Tests for the management CLI.
"""

import json
import re

import pytest

from tools.manage import build_parser, main

from fakes import HUB_ADDRESS, LEDGER_ADDRESS, PRIVATE_KEY, VERIFIER_KEY, WEATHER_KEY


@pytest.fixture
def relay_env(monkeypatch):
    monkeypatch.setenv("OPENWEATHERMAP_API_KEY", WEATHER_KEY)
    monkeypatch.setenv("FDC_VERIFIER_BASE_URL", "https://verifier.test/verifier/")
    monkeypatch.setenv("JQ_VERIFIER_API_KEY", VERIFIER_KEY)
    monkeypatch.setenv("COSTON2_RPC_URL", "http://rpc.test")
    monkeypatch.setenv("FDC_HUB_ADDRESS", HUB_ADDRESS)
    monkeypatch.setenv("USER_ACTIONS_ADDRESS", LEDGER_ADDRESS)
    monkeypatch.setenv("PROVIDER_PRIVATE_KEY", PRIVATE_KEY)
    monkeypatch.setenv("FDC_REQUEST_FEE", "0.01")
    monkeypatch.setenv("TRANSPORT_SOURCE_URL", "https://transport.test/trips/latest")
    return monkeypatch


class TestManageCli:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_attest_requires_user_and_action(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["attest", "--user", "0xabc"])

    def test_generate_key(self, capsys):
        assert main(["generate-key"]) == 0

        out = capsys.readouterr().out
        assert re.search(r"Address: 0x[0-9a-fA-F]{40}", out)
        assert re.search(r"PROVIDER_PRIVATE_KEY=0x[0-9a-f]{64}", out)

    def test_action_types_json(self, relay_env, capsys):
        assert main(["action-types", "--json"]) == 0

        definitions = json.loads(capsys.readouterr().out)
        assert {d["name"] for d in definitions} == {"TEMP_SEOUL_GT_15", "SUSTAINABLE_TRANSPORT_KM"}
        assert all(d["id"].startswith("0x") and len(d["id"]) == 66 for d in definitions)

    def test_check_config_ok(self, relay_env, capsys):
        assert main(["check-config"]) == 0

        out = capsys.readouterr().out
        assert "[OK]" in out
        assert "10000000000000000 wei" in out
        for secret in (WEATHER_KEY, VERIFIER_KEY, PRIVATE_KEY):
            assert secret not in out

    def test_check_config_reports_problems(self, relay_env, capsys):
        relay_env.delenv("COSTON2_RPC_URL")
        relay_env.delenv("FDC_REQUEST_FEE")

        assert main(["check-config"]) == 1

        out = capsys.readouterr().out
        assert "COSTON2_RPC_URL is not set" in out
        assert "FDC_REQUEST_FEE is not set" in out

    def test_check_config_unparseable(self, relay_env, capsys):
        relay_env.setenv("IN_FLIGHT_POLICY", "sometimes")

        assert main(["check-config"]) == 1
        assert "[FAIL]" in capsys.readouterr().out

    def test_verified_rejects_unknown_action(self, relay_env, capsys):
        assert main(["verified", "--user", "0x" + "ab" * 20, "--action", "NOPE"]) == 1
        assert "Unsupported action type" in capsys.readouterr().out
