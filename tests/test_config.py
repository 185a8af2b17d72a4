from datetime import timedelta

import pytest
from pydantic import ValidationError

from registry_cleaner.config import (
    Args,
    Config,
    PatternRules,
    RetentionPolicy,
    load_config,
    merge_settings,
    parse_duration,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for variable in ("GITLAB_TOKEN", "GITLAB_BASE_URL", "GITLAB_PROJECT_ID"):
        monkeypatch.delenv(variable, raising=False)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("", timedelta(0)),
        (None, timedelta(0)),
        ("12h", timedelta(hours=12)),
        ("30d", timedelta(days=30)),
        ("10 Days", timedelta(days=10)),
        ("2m", timedelta(days=60)),
        ("1month", timedelta(days=30)),
    ],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["abc", "5w", "d"])
def test_parse_duration_invalid(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_compile_regexps():
    rules = PatternRules(repositories=["^group/"], tags=[r"^v\d+", "rc"])
    assert [rule.pattern for rule in rules.tags] == [r"^v\d+", "rc"]
    assert rules.repositories[0].search("group/project/app")
    assert rules.excludes == ()


def test_compile_invalid_regexp_is_fatal():
    with pytest.raises(SystemExit):
        PatternRules(tags=["v(1"])


def test_retention_policy_defaults():
    policy = RetentionPolicy()
    assert policy.keep_n == 10
    assert policy.older_than == timedelta(0)


def test_retention_policy_parses_older_than():
    assert RetentionPolicy(older_than="30d").older_than == timedelta(days=30)
    assert RetentionPolicy(keep_n=-3).keep_n == 0


def test_retention_policy_invalid_older_than_is_fatal():
    with pytest.raises(SystemExit):
        RetentionPolicy(older_than="soon")


def test_args_from_args():
    args = Args.from_args(
        ["-p", "group/project", "-t", r"^v\d+", "-t", "rc", "-e", "keep", "-k", "3"]
        + ["--older-than", "1d", "-n", "-v"]
    )
    assert args.project == "group/project"
    assert args.tags == [r"^v\d+", "rc"]
    assert args.excludes == ["keep"]
    assert args.registries is None
    assert args.keep_n == 3
    assert args.older_than == "1d"
    assert args.dry_run is True
    assert args.verbose is True
    assert args.insecure is False


def test_merge_settings_cli_overrides_file():
    data = {
        "project": "file/project",
        "rules": {"tags": ["^file"], "excludes": ["old"]},
        "policy": {"keep_n": 5, "older_than": "2d"},
    }
    args = Args(tags=["^cli"], keep_n=1, insecure=True)
    settings = merge_settings(data, args)
    assert settings["project"] == "file/project"
    assert settings["rules"] == {"tags": ["^cli"], "excludes": ["old"]}
    assert settings["policy"] == {"keep_n": 1, "older_than": "2d"}
    assert settings["insecure"] is True
    assert data["rules"] == {"tags": ["^file"], "excludes": ["old"]}


def test_load_config(tmp_path, monkeypatch):
    monkeypatch.setenv("GITLAB_TOKEN", "env-token")
    monkeypatch.setenv("GITLAB_PROJECT_ID", "env/project")
    path = tmp_path / "config.yaml"
    path.write_text(
        "project: file/project\n"
        "timeout: 30\n"
        "rules:\n"
        "  tags: ['^v']\n"
        "policy:\n"
        "  keep_n: 5\n"
        "  older_than: 2d\n"
    )
    config = load_config(Args.from_args(["-c", str(path), "-k", "7"]))

    assert isinstance(config, Config)
    assert config.project == "file/project"
    assert config.token == "env-token"
    assert config.timeout == 30
    assert config.policy.keep_n == 7
    assert config.policy.older_than == timedelta(days=2)
    assert [rule.pattern for rule in config.rules.tags] == ["^v"]
    assert config.api_url == "https://gitlab.com/api/v4"


def test_load_config_from_env(monkeypatch):
    monkeypatch.setenv("GITLAB_PROJECT_ID", "42")
    monkeypatch.setenv("GITLAB_BASE_URL", "https://gitlab.example.com/")
    config = load_config(Args())
    assert config.project == "42"
    assert config.token == ""
    assert config.api_url == "https://gitlab.example.com/api/v4"


def test_load_config_token_from_named_env(tmp_path, monkeypatch):
    monkeypatch.setenv("REGISTRY_TOKEN", "named-token")
    path = tmp_path / "config.yaml"
    path.write_text('project: 7\ntoken: "__ENV: REGISTRY_TOKEN"\n')
    config = load_config(Args(config=path))
    assert config.project == "7"
    assert config.token == "named-token"


def test_load_config_without_project():
    with pytest.raises(SystemExit):
        load_config(Args())


def test_load_config_missing_file(tmp_path):
    with pytest.raises(SystemExit):
        load_config(Args(project="group/project", config=tmp_path / "missing.yaml"))


def test_load_config_invalid_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(SystemExit):
        load_config(Args(project="group/project", config=path))


def test_config_validators(make_config):
    config = make_config(timeout=0, max_concurrent_requests=0, proxy="")
    assert config.timeout == 20
    assert config.max_concurrent_requests == 10
    assert config.proxy is None

    with pytest.raises(SystemExit):
        make_config(proxy="not-a-url")
    with pytest.raises(SystemExit):
        make_config(base_url="gitlab")


def test_config_is_immutable(make_config):
    config = make_config()
    with pytest.raises(ValidationError):
        config.project = "other/project"
    with pytest.raises(ValidationError):
        config.args.dry_run = True
    with pytest.raises(ValidationError):
        config.policy.keep_n = 0
    assert config.dry_run is False
