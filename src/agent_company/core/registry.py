"""Worker type registry: role configs and keyword-based worker type matching."""

from dataclasses import dataclass, replace

from agent_company.core.errors import ValidationError
from agent_company.db.models import WORKER_TYPES

DEFAULT_WORKER_TYPE = "developer"


@dataclass(frozen=True)
class WorkerTypeConfig:
    type: str
    capabilities: tuple[str, ...]
    tools: tuple[str, ...]
    persona: str
    temperature: float = 0.3


WORKER_TYPE_CONFIGS: dict[str, WorkerTypeConfig] = {
    "research": WorkerTypeConfig(
        type="research",
        capabilities=(
            "web_search",
            "document_analysis",
            "technology_evaluation",
            "market_research",
            "competitor_analysis",
            "trend_analysis",
        ),
        tools=("web_search", "document_reader", "note_taker", "summary_generator"),
        persona=(
            "You are an experienced researcher skilled in market trends, technology "
            "evaluation, and competitive analysis. You provide objective, data-driven insights."
        ),
        temperature=0.3,
    ),
    "design": WorkerTypeConfig(
        type="design",
        capabilities=(
            "architecture_design",
            "api_design",
            "data_model_design",
            "system_design",
            "component_design",
            "interface_design",
        ),
        tools=("diagram_generator", "schema_designer", "api_spec_writer", "document_writer"),
        persona=(
            "You are an experienced software architect skilled in scalable, maintainable "
            "system design."
        ),
        temperature=0.4,
    ),
    "designer": WorkerTypeConfig(
        type="designer",
        capabilities=(
            "ui_design",
            "ux_design",
            "wireframe_creation",
            "style_guide",
            "prototype_design",
            "accessibility_design",
        ),
        tools=("wireframe_tool", "color_palette_generator", "typography_selector", "component_library"),
        persona=(
            "You are an experienced UI/UX designer skilled in user-centered design and "
            "accessibility."
        ),
        temperature=0.5,
    ),
    "developer": WorkerTypeConfig(
        type="developer",
        capabilities=(
            "code_implementation",
            "file_operations",
            "command_execution",
            "debugging",
            "refactoring",
            "code_optimization",
        ),
        tools=("code_editor", "file_manager", "terminal", "git", "package_manager", "linter"),
        persona=(
            "You are an experienced software developer. You write efficient, maintainable code "
            "with tests."
        ),
        temperature=0.2,
    ),
    "test": WorkerTypeConfig(
        type="test",
        capabilities=(
            "test_creation",
            "test_execution",
            "coverage_analysis",
            "test_planning",
            "bug_detection",
            "regression_testing",
        ),
        tools=("test_runner", "coverage_tool", "assertion_library", "mock_generator", "test_reporter"),
        persona=(
            "You are an experienced QA engineer skilled in property testing and E2E testing. "
            "You excel at finding edge cases."
        ),
        temperature=0.3,
    ),
    "reviewer": WorkerTypeConfig(
        type="reviewer",
        capabilities=(
            "code_review",
            "quality_check",
            "merge_approval",
            "security_review",
            "performance_review",
            "best_practices_check",
        ),
        tools=("diff_viewer", "code_analyzer", "security_scanner", "performance_profiler", "comment_tool"),
        persona=(
            "You are an experienced senior engineer skilled in code review and security. "
            "You provide constructive feedback."
        ),
        temperature=0.2,
    ),
}

# Declaration order breaks ties between equal scores.
WORKER_TYPE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "research": (
        "調査", "リサーチ", "分析", "評価", "比較", "検討", "市場", "トレンド", "競合",
        "research", "analyze", "evaluate", "compare", "investigate", "market", "trend",
    ),
    "design": (
        "設計", "アーキテクチャ", "スキーマ", "モデル", "インターフェース",
        "design", "architecture", "schema", "model", "structure", "api",
    ),
    "designer": (
        "デザイン", "ワイヤーフレーム", "モックアップ", "画面", "レイアウト", "スタイル",
        "ui", "ux", "wireframe", "mockup", "prototype", "style", "visual",
    ),
    "developer": (
        "実装", "開発", "コード", "プログラム", "機能", "修正", "バグ", "リファクタ",
        "implement", "develop", "code", "create", "build", "fix", "feature",
    ),
    "test": (
        "テスト", "検証", "カバレッジ",
        "test", "testing", "verify", "validate", "coverage", "qa", "e2e",
    ),
    "reviewer": (
        "レビュー", "チェック", "承認", "品質", "セキュリティ",
        "review", "check", "approve", "quality", "audit", "merge",
    ),
}


def _ticket_text(ticket_or_text) -> str:
    if isinstance(ticket_or_text, str):
        return ticket_or_text
    if isinstance(ticket_or_text, dict):
        return f"{ticket_or_text.get('title', '')} {ticket_or_text.get('description', '')}"
    return f"{getattr(ticket_or_text, 'title', '')} {getattr(ticket_or_text, 'description', '')}"


def score_worker_types(ticket_or_text) -> dict[str, int]:
    """Count keyword hits per worker type."""
    text = _ticket_text(ticket_or_text).lower()
    return {
        worker_type: sum(1 for kw in keywords if kw in text)
        for worker_type, keywords in WORKER_TYPE_KEYWORDS.items()
    }


def match_worker_type(ticket_or_text) -> str:
    """Classify a child ticket (or its text) into one of the worker types.

    The type with the most keyword hits wins; ties go to the type declared
    first. With no hits at all the result is 'developer'.
    """
    best_type, best_score = DEFAULT_WORKER_TYPE, 0
    for worker_type, score in score_worker_types(ticket_or_text).items():
        if score > best_score:
            best_type, best_score = worker_type, score
    return best_type


def is_valid_type(worker_type: str) -> bool:
    return worker_type in WORKER_TYPES


class WorkerTypeRegistry:
    """Looks up worker type configs, with optional per-instance overrides."""

    def __init__(self, overrides: dict[str, dict] | None = None):
        self._overrides: dict[str, dict] = {}
        for worker_type, changes in (overrides or {}).items():
            self.set_custom_config(worker_type, **changes)

    def get_config(self, worker_type: str) -> WorkerTypeConfig:
        if not is_valid_type(worker_type):
            raise ValidationError(f"Invalid worker type: {worker_type}")
        config = WORKER_TYPE_CONFIGS[worker_type]
        if changes := self._overrides.get(worker_type):
            config = replace(config, **changes)
        return config

    def set_custom_config(self, worker_type: str, **changes):
        if not is_valid_type(worker_type):
            raise ValidationError(f"Invalid worker type: {worker_type}")
        unknown = set(changes) - {"capabilities", "tools", "persona", "temperature"}
        if unknown:
            raise ValidationError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        for key in ("capabilities", "tools"):
            if key in changes:
                changes[key] = tuple(changes[key])
        self._overrides[worker_type] = changes

    def get_capabilities(self, worker_type: str) -> list[str]:
        return list(self.get_config(worker_type).capabilities)

    def get_tools(self, worker_type: str) -> list[str]:
        return list(self.get_config(worker_type).tools)

    def get_persona(self, worker_type: str) -> str:
        return self.get_config(worker_type).persona

    def find_types_by_capability(self, capability: str) -> list[str]:
        return [t for t in WORKER_TYPES if capability in self.get_config(t).capabilities]

    def all_configs(self) -> list[WorkerTypeConfig]:
        return [self.get_config(t) for t in WORKER_TYPES]

    def is_valid_type(self, worker_type: str) -> bool:
        return is_valid_type(worker_type)

    def match_worker_type(self, ticket_or_text) -> str:
        return match_worker_type(ticket_or_text)
