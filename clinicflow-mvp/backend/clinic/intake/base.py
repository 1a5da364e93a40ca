"""
BaseIntakeAdapter — 所有请求体 Adapter 的抽象基类。

每种请求只需：
1. 继承 BaseIntakeAdapter
2. 实现 parse() 和 transform()，需要的话 override validate()
3. 在 factory.py 的 _REGISTRY 注册一行
"""

import json
import re
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Optional

from ..exceptions import ValidationError

# ── 共用校验正则（Adapter 可直接复用） ─────────────────────────────────────
PATIENT_ID_RE = re.compile(r"^\d{10}$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def parse_date(value) -> Optional[date]:
    """'YYYY-MM-DD'（允许带时间部分）→ date；解析不了返回 None。"""
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def parse_time(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value if TIME_RE.match(value) else None


def as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


class BaseIntakeAdapter(ABC):
    """
    三步流水线：parse → transform → validate

    validate() 默认把 self._errors 里收集的字段错误一次性抛出，
    子类 super() 前追加自己的检查即可。
    """

    kind: str = ""

    def __init__(self, raw_body: bytes | str, content_type: str = ""):
        self._raw_body = raw_body
        self._content_type = content_type
        self._parsed: Any = None
        self._errors: list[dict] = []

    # ── 必须实现 ───────────────────────────────────────────────────────────

    @abstractmethod
    def parse(self) -> Any:
        """原始数据 → dict，赋值给 self._parsed。"""

    @abstractmethod
    def transform(self) -> Any:
        """self._parsed → intake dataclass。"""

    # ── 提供默认实现，子类可 override ──────────────────────────────────────

    def _load_json(self) -> dict:
        body = self._raw_body
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        if not body or not body.strip():
            self._parsed = {}
            return self._parsed
        try:
            parsed = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError(
                message="Request body is not valid JSON.",
                code="INVALID_JSON",
                detail={"error": str(exc)},
            )
        if not isinstance(parsed, dict):
            raise ValidationError(
                message="Request body must be a JSON object.",
                code="INVALID_JSON",
            )
        self._parsed = parsed
        return parsed

    def error(self, field_name: str, message: str) -> None:
        self._errors.append({"field": field_name, "message": message})

    def validate(self, data: Any) -> None:
        if self._errors:
            raise ValidationError(
                message="Request validation failed.",
                code="VALIDATION_ERROR",
                detail={"errors": self._errors},
            )

    # ── 对外统一入口 ───────────────────────────────────────────────────────

    def process(self) -> Any:
        """parse → transform → validate，返回校验通过的 dataclass。"""
        self.parse()
        data = self.transform()
        self.validate(data)
        return data
