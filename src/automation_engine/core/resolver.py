"""
变量引用解析

支持 ``{{path}}`` 形式的变量引用：整个字符串为单一引用时返回原始类型的值，
否则将引用插值为字符串。路径为点号分隔，每一段可带一个 ``key[index]`` 下标。
"""
import json
import re
from typing import Any, Dict, Optional


REFERENCE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
INDEXED_SEGMENT = re.compile(r"^(.*)\[(\d+)\]$")

_MISSING = object()


def _step(container: Any, key: str) -> Any:
    if isinstance(container, dict):
        if key in container:
            return container[key]
        return _MISSING
    if isinstance(container, (list, tuple)) and key.lstrip("-").isdigit():
        index = int(key)
        if -len(container) <= index < len(container):
            return container[index]
    return _MISSING


def get_field_value(path: str, context: Any) -> Any:
    """按点号路径取值，任何一级缺失时返回 None"""
    if path is None:
        return None
    path = str(path).strip()
    if path == "":
        return None

    value = context
    for segment in path.split("."):
        match = INDEXED_SEGMENT.match(segment)
        if match:
            key, index = match.group(1), match.group(2)
            if key:
                value = _step(value, key)
                if value is _MISSING:
                    return None
            value = _step(value, index)
        else:
            value = _step(value, segment)
        if value is _MISSING or value is None:
            return None
    return value


def stringify(value: Any) -> str:
    """将值插值进字符串时的文本形式"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


class ValueResolver:
    """变量引用解析器"""

    def get_field_value(self, path: str, context: Any) -> Any:
        return get_field_value(path, context)

    def resolve_value(self, value: Any, variables: Optional[Dict[str, Any]]) -> Any:
        """
        解析单个值

        Args:
            value: 待解析的值，非字符串原样返回
            variables: 变量上下文

        Returns:
            整体引用时返回原始类型，否则返回插值后的字符串
        """
        if not isinstance(value, str):
            return value

        matches = list(REFERENCE_PATTERN.finditer(value))
        if not matches:
            return value

        variables = variables or {}
        if len(matches) == 1 and matches[0].group(0) == value.strip():
            return get_field_value(matches[0].group(1), variables)

        return REFERENCE_PATTERN.sub(
            lambda m: stringify(get_field_value(m.group(1), variables)),
            value
        )

    def resolve_config(self, config: Any, variables: Optional[Dict[str, Any]]) -> Any:
        """递归解析配置中的所有引用"""
        if isinstance(config, dict):
            return {key: self.resolve_config(item, variables) for key, item in config.items()}
        if isinstance(config, list):
            return [self.resolve_config(item, variables) for item in config]
        return self.resolve_value(config, variables)
