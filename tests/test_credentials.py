import logging

import pytest

from runner_agent.credentials import CredentialResolver, mask_token
from runner_agent.errors import CredentialError


def test_last_matching_line_wins(tmp_path):
    secrets = tmp_path / "credentials"
    secrets.write_text(
        "GITHUB_TOKEN=ghp_first\n"
        "OTHER=value\n"
        "  GITHUB_TOKEN : ghp_second \r\n"
        "GITHUB_TOKEN=ghp_last\r\n"
    )
    resolver = CredentialResolver(secrets, env={"GITHUB_TOKEN": "ghp_env"})
    assert resolver.resolve() == "ghp_last"


def test_colon_separator_and_whitespace(tmp_path):
    secrets = tmp_path / "credentials"
    secrets.write_text("GITHUB_TOKEN:   ghp_colon\r\n")
    assert CredentialResolver(secrets, env={}).resolve() == "ghp_colon"


def test_key_is_case_sensitive(tmp_path):
    secrets = tmp_path / "credentials"
    secrets.write_text("github_token=ghp_lower\nMY_GITHUB_TOKEN=ghp_prefixed\n")
    assert CredentialResolver(secrets, env={"GITHUB_TOKEN": "ghp_env"}).resolve() == "ghp_env"


def test_env_only(tmp_path):
    resolver = CredentialResolver(tmp_path / "missing", env={"GITHUB_TOKEN": "ghp_env"})
    assert resolver.resolve() == "ghp_env"


def test_empty_file_falls_back_to_env(tmp_path):
    secrets = tmp_path / "credentials"
    secrets.write_text("")
    assert CredentialResolver(secrets, env={"GITHUB_TOKEN": "ghp_env"}).resolve() == "ghp_env"


def test_directory_is_not_a_secret_file(tmp_path):
    assert CredentialResolver(tmp_path, env={"GITHUB_TOKEN": "ghp_env"}).resolve() == "ghp_env"


def test_neither_source_names_both(tmp_path):
    secrets = tmp_path / "credentials"
    with pytest.raises(CredentialError) as exc:
        CredentialResolver(secrets, env={"GITHUB_TOKEN": "  "}).resolve()
    assert "GITHUB_TOKEN" in str(exc.value)
    assert str(secrets) in str(exc.value)


def test_token_is_never_logged_in_full(tmp_path, caplog):
    secrets = tmp_path / "credentials"
    secrets.write_text("GITHUB_TOKEN=ghp_supersecretvalue\n")
    with caplog.at_level(logging.DEBUG):
        CredentialResolver(secrets, env={}).resolve()
    assert "ghp_supersecretvalue" not in caplog.text
    assert "ghp_****" in caplog.text


def test_mask_token():
    assert mask_token("ghp_abcdef") == "ghp_****"
    assert mask_token("") == ""
    assert mask_token(None) == ""
