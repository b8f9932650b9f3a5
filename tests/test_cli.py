"""Tests for the command surface, using click's CliRunner and a fake remote."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from click.testing import CliRunner
from fakes import FakeRemote, ListFailsAfterWrite

from ovh_redirections.cli import (
    CliState,
    ConfigError,
    Settings,
    build_context,
    cli,
    main,
    mask_secrets,
)
from ovh_redirections.provider import ApiError, RemoteClient

DOMAIN = "example.com"
BASE = f"/email/domain/{DOMAIN}/redirection"


def redir(rid: str, local: str, to: str = "me@mail.org") -> Dict[str, Any]:
    return {"id": rid, "from": f"{local}@{DOMAIN}", "to": to}


def make_state(tmp_path: Path, remote: Optional[List[Dict[str, Any]]] = None) -> CliState:
    settings = Settings(
        app_key="AK",
        app_secret="AS",
        consumer_key="CK",
        domain=DOMAIN,
        spam_address=f"spam@{DOMAIN}",
        default_to="me+{{alias}}@mail.org",
        cache_path=str(tmp_path / "cache.json"),
    )
    client = FakeRemote(remote, domain=DOMAIN)
    return CliState(settings=settings, context=build_context(settings, client=client))


def invoke(state: CliState, *args: str):
    return CliRunner().invoke(cli, list(args), obj=state)


class TestListCommand:
    def test_list_reads_cache_without_remote_calls(self, tmp_path: Path) -> None:
        state = make_state(tmp_path)

        result = invoke(state, "list", "--format", "json")

        assert result.exit_code == 0
        assert json.loads(result.output) == []
        assert state.context.client.calls == []

    def test_list_update_then_filter_and_sort(self, tmp_path: Path) -> None:
        state = make_state(
            tmp_path,
            remote=[redir("1", "b"), redir("2", "a"), redir("3", "junk", to=f"spam@{DOMAIN}")],
        )

        result = invoke(state, "list", "-u", "--format", "json", "--sort", "id", "--desc")

        assert result.exit_code == 0
        payload = json.loads(result.output.split("\n", 1)[1])
        assert [r["id"] for r in payload] == ["2", "1"]

    def test_list_spam_flag_includes_sink(self, tmp_path: Path) -> None:
        state = make_state(tmp_path, remote=[redir("3", "junk", to=f"spam@{DOMAIN}")])
        state.context.syncer.sync_once()

        result = invoke(state, "list", "--spam", "--format", "csv")

        assert f'"spam@{DOMAIN}"' in result.output

    def test_list_search(self, tmp_path: Path) -> None:
        state = make_state(tmp_path, remote=[redir("1", "shop"), redir("2", "bank")])
        state.context.syncer.sync_once()

        result = invoke(state, "list", "--search", "SHOP", "--format", "csv")

        assert "shop@example.com" in result.output
        assert "bank@example.com" not in result.output

    def test_list_table(self, tmp_path: Path) -> None:
        state = make_state(tmp_path, remote=[redir("1", "shop")])
        state.context.syncer.sync_once()

        result = invoke(state, "list")

        assert result.exit_code == 0
        assert "shop@example.com" in result.output


class TestMutationCommands:
    def test_update_prints_counts(self, tmp_path: Path) -> None:
        state = make_state(tmp_path, remote=[redir("1", "a"), redir("2", "b")])

        result = invoke(state, "update")

        assert result.exit_code == 0
        assert "2 remote" in result.output
        assert "2 new" in result.output

    def test_create_with_one_argument_uses_default(self, tmp_path: Path) -> None:
        state = make_state(tmp_path)

        result = invoke(state, "create", "news")

        assert result.exit_code == 0
        body = state.context.client.calls_for("POST")[0][2]
        assert body["to"] == "me+news@mail.org"

    def test_delete_alias_and_partial_failure_exit_code(self, tmp_path: Path) -> None:
        state = make_state(tmp_path, remote=[redir("1", "a")])
        state.context.syncer.sync_once()

        result = invoke(state, "rm", "a", "ghost")

        assert result.exit_code == 1
        assert len(state.context.client.calls_for("DELETE")) == 1

    def test_ban(self, tmp_path: Path) -> None:
        state = make_state(tmp_path)

        result = invoke(state, "ban", "spammy")

        assert result.exit_code == 0
        assert state.context.client.calls_for("POST")[0][2]["to"] == f"spam@{DOMAIN}"

    def test_change_alias_runs_modify(self, tmp_path: Path) -> None:
        state = make_state(tmp_path, remote=[redir("1", "a")])
        state.context.syncer.sync_once()

        result = invoke(state, "change", "a", "new@mail.org")

        assert result.exit_code == 0
        assert state.context.client.redirections["1"]["to"] == "new@mail.org"


class TestConfigErrors:
    def test_missing_domain_raises_config_error(self, tmp_path: Path) -> None:
        state = CliState(settings=Settings(app_key="AK", app_secret="AS", consumer_key="CK"))

        result = invoke(state, "list")

        assert isinstance(result.exception, ConfigError)
        assert "DOMAIN" in str(result.exception)

    def test_main_reports_config_error_with_exit_2(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys
    ) -> None:
        monkeypatch.chdir(tmp_path)
        for name in ("APP_KEY", "APP_SECRET", "CONSUMER_KEY", "DOMAIN", "OVH_REDIR_CONFIG"):
            monkeypatch.delenv(name, raising=False)

        with pytest.raises(SystemExit) as exc:
            main(["list"])

        assert exc.value.code == 2
        assert "Configuration error" in capsys.readouterr().err


class RaisingRemote(RemoteClient):
    def __init__(self, error: Exception):
        self.error = error

    def request(self, method, path, body=None):
        raise self.error


def boundary_state(tmp_path: Path, client: RemoteClient) -> CliState:
    settings = Settings(
        app_key="AK",
        app_secret="APP_SECRET_VALUE",
        consumer_key="CK",
        domain=DOMAIN,
        cache_path=str(tmp_path / "cache.json"),
    )
    return CliState(settings=settings, client=client)


class TestProcessBoundary:
    def test_unexpected_error_is_summarised_without_traceback(
        self, tmp_path: Path, capsys
    ) -> None:
        state = boundary_state(tmp_path, RaisingRemote(RuntimeError("boom APP_SECRET_VALUE")))

        with pytest.raises(SystemExit) as exc:
            main(["status"], state=state)

        err = capsys.readouterr().err
        assert exc.value.code == 1
        assert "Unexpected error" in err
        assert "Traceback" not in err
        assert "APP_SECRET_VALUE" not in err

    def test_debug_prints_masked_traceback(self, tmp_path: Path, capsys) -> None:
        state = boundary_state(tmp_path, RaisingRemote(RuntimeError("boom APP_SECRET_VALUE")))

        with pytest.raises(SystemExit) as exc:
            main(["--debug", "status"], state=state)

        err = capsys.readouterr().err
        assert exc.value.code == 1
        assert "Traceback" in err
        assert "****" in err
        assert "APP_SECRET_VALUE" not in err

    def test_remote_error_is_reported_with_secrets_masked(self, tmp_path: Path, capsys) -> None:
        error = ApiError("denied for APP_SECRET_VALUE", status=403, path="/me")
        state = boundary_state(tmp_path, RaisingRemote(error))

        with pytest.raises(SystemExit) as exc:
            main(["status"], state=state)

        err = capsys.readouterr().err
        assert exc.value.code == 1
        assert "Remote call failed" in err
        assert "APP_SECRET_VALUE" not in err

    def test_failed_reconciliation_after_delete_warns_cache_is_stale(
        self, tmp_path: Path
    ) -> None:
        state = make_state(tmp_path)
        client = ListFailsAfterWrite([redir("1", "a")], domain=DOMAIN)
        state.context = build_context(state.settings, client=client)

        result = invoke(state, "delete", "--update", "a")

        assert result.exit_code == 1
        assert "Deleted" in result.output
        assert "cache is stale" in result.output
        assert "1" not in client.redirections


class TestMaskSecrets:
    def test_masks_configured_values(self) -> None:
        text = "key=SECRETKEY123 consumer=CONSUMER999"
        assert mask_secrets(text, ["SECRETKEY123", "CONSUMER999"]) == "key=**** consumer=****"

    def test_masks_ovh_headers(self) -> None:
        text = "{'X-Ovh-Signature': '$1$abcdef', 'X-Ovh-Consumer': 'ck-value'}"
        masked = mask_secrets(text, [])
        assert "abcdef" not in masked
        assert "ck-value" not in masked
