"""Tests for environment-based configuration."""

from pathlib import Path

from agent_company.config import Config, get_config


class TestConfig:
    def test_defaults(self, monkeypatch):
        for key in (
            "AC_DB_PATH", "AC_MAX_REVIEW_ROUNDS", "AC_RETRY_MAX_ATTEMPTS", "AC_RETRY_INITIAL_DELAY",
            "AC_RETRY_MULTIPLIER", "AC_RETRY_MAX_DELAY", "SLACK_BOT_TOKEN",
        ):
            monkeypatch.delenv(key, raising=False)
        config = get_config()
        assert config.db_path.name == "ac.db"
        assert config.max_review_rounds == 3
        assert config.retry_policy().delays() == [1.0, 2.0]
        assert config.slack_bot_token is None

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("AC_DB_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("AC_AGENT_BRANCH_TEMPLATE", "bots/{project_id}")
        monkeypatch.setenv("AC_MAX_REVIEW_ROUNDS", "0")
        monkeypatch.setenv("AC_RETRY_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("AC_RETRY_INITIAL_DELAY", "0.5")
        monkeypatch.setenv("AC_GIT_TIMEOUT", "30")
        config = get_config()
        assert config.db_path == tmp_path / "x.db"
        assert config.agent_branch_for("web") == "bots/web"
        assert config.max_review_rounds == 0
        assert config.git_timeout == 30.0
        assert config.retry_policy().delays() == [0.5, 1.0, 2.0, 4.0]

    def test_agent_branch_default(self):
        assert Config(db_path=Path("x.db")).agent_branch_for("web") == "agent/web"
