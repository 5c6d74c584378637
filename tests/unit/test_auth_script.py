"""Unit tests for scripts/auth.py."""

from __future__ import annotations

import importlib.util
import io
import sys
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from typing import Any

import boto3
import pytest
from moto import mock_aws

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src" / "rce-lib" / "src"))

from rce.auth import CredentialStore, hash_credential


def _load_module() -> Any:
    repo_root = Path(__file__).resolve().parents[2]
    spec = importlib.util.spec_from_file_location("auth_script", repo_root / "scripts" / "auth.py")
    assert spec and spec.loader
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)  # type: ignore[union-attr]
    return module


auth_script = _load_module()
_REGION = "eu-west-2"
_TABLE_NAME = "rce-auth"


@pytest.fixture(autouse=True)
def aws_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AWS_REGION", _REGION)
    monkeypatch.setenv("AWS_DEFAULT_REGION", _REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.delenv("RCE_AUTH_TABLE", raising=False)


@pytest.fixture
def auth_table() -> Any:
    with mock_aws():
        ddb = boto3.client("dynamodb", region_name=_REGION)
        ddb.create_table(
            TableName=_TABLE_NAME,
            KeySchema=[
                {"AttributeName": "PK", "KeyType": "HASH"},
                {"AttributeName": "SK", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        yield boto3.resource("dynamodb", region_name=_REGION)


def _run(argv: list[str]) -> tuple[int, str, str]:
    out, err = io.StringIO(), io.StringIO()
    with redirect_stdout(out), redirect_stderr(err):
        code = auth_script.main(argv)
    return code, out.getvalue(), err.getvalue()


def test_parse_args_for_new_and_rm() -> None:
    new = auth_script.parse_args(["new", "ci-bot"])
    rm = auth_script.parse_args(["rm", "--credential", "abc", "--table-name", "other"])
    assert new.command == "new"
    assert new.name == "ci-bot"
    assert new.table_name == "rce-auth"
    assert rm.command == "rm"
    assert rm.digest is None
    assert rm.credential == "abc"
    assert rm.table_name == "other"


def test_table_name_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RCE_AUTH_TABLE", "team-auth")
    assert auth_script.parse_args(["new", "x"]).table_name == "team-auth"


def test_new_prints_usable_credential(auth_table: Any) -> None:
    code, out, err = _run(["new", "ci-bot"])

    credential = out.strip()
    assert code == 0
    assert f"digest={hash_credential(credential)}" in err
    assert CredentialStore(_TABLE_NAME, dynamodb_resource=auth_table).lookup(credential) == "ci-bot"


def test_rm_by_digest_revokes(auth_table: Any) -> None:
    store = CredentialStore(_TABLE_NAME, dynamodb_resource=auth_table)
    credential = store.create("alice")

    code, out, _err = _run(["rm", hash_credential(credential)])

    assert code == 0
    assert "revoked" in out
    assert store.lookup(credential) is None


def test_rm_by_credential_and_missing(auth_table: Any) -> None:
    store = CredentialStore(_TABLE_NAME, dynamodb_resource=auth_table)
    credential = store.create("bob")

    assert _run(["rm", "--credential", credential])[0] == 0
    code, out, _err = _run(["rm", "--credential", credential])
    assert code == 0
    assert "not present" in out


def test_rm_requires_exactly_one_selector(auth_table: Any) -> None:
    assert _run(["rm"])[0] == 2
    assert _run(["rm", "a" * 64, "--credential", "x"])[0] == 2


def test_rm_rejects_malformed_digest(auth_table: Any) -> None:
    code, _out, err = _run(["rm", "not-hex"])
    assert code == 2
    assert "not a credential digest" in err
