"""
条件评估器
"""
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Union

from ..exceptions import InvalidExpressionError, UnknownOperatorError
from .expression import (
    evaluate_ast, is_numeric, is_truthy, loose_equals, parse_expression,
    strict_equals, value_to_expression
)
from .functions import Clock, build_default_functions, leading_number, parse_date, utc_now
from .resolver import REFERENCE_PATTERN, ValueResolver, get_field_value


logger = logging.getLogger(__name__)


REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}

# 运算符元数据（供构建器界面使用）
OPERATOR_INFO: Dict[str, Dict[str, Dict[str, str]]] = {
    "equality": {
        "equals": {"label": "Equals", "value_type": "any"},
        "not_equals": {"label": "Not Equals", "value_type": "any"},
        "strict_equals": {"label": "Strictly Equals", "value_type": "any"},
        "strict_not_equals": {"label": "Strictly Not Equals", "value_type": "any"},
    },
    "numeric": {
        "greater_than": {"label": "Greater Than", "value_type": "number"},
        "greater_than_or_equals": {"label": "Greater Than or Equals", "value_type": "number"},
        "less_than": {"label": "Less Than", "value_type": "number"},
        "less_than_or_equals": {"label": "Less Than or Equals", "value_type": "number"},
        "between": {"label": "Between", "value_type": "range"},
        "not_between": {"label": "Not Between", "value_type": "range"},
    },
    "string": {
        "contains": {"label": "Contains", "value_type": "string"},
        "not_contains": {"label": "Does Not Contain", "value_type": "string"},
        "starts_with": {"label": "Starts With", "value_type": "string"},
        "ends_with": {"label": "Ends With", "value_type": "string"},
        "matches": {"label": "Matches Regex", "value_type": "regex"},
        "not_matches": {"label": "Does Not Match Regex", "value_type": "regex"},
        "contains_i": {"label": "Contains (case-insensitive)", "value_type": "string"},
        "equals_i": {"label": "Equals (case-insensitive)", "value_type": "string"},
    },
    "array": {
        "in": {"label": "In List", "value_type": "array"},
        "not_in": {"label": "Not In List", "value_type": "array"},
        "has_key": {"label": "Has Key", "value_type": "string"},
        "has_value": {"label": "Has Value", "value_type": "any"},
        "array_contains": {"label": "Array Contains", "value_type": "any"},
        "array_count": {"label": "Item Count Equals", "value_type": "number"},
        "array_count_gt": {"label": "Item Count Greater Than", "value_type": "number"},
        "array_count_lt": {"label": "Item Count Less Than", "value_type": "number"},
    },
    "type": {
        "is_empty": {"label": "Is Empty", "value_type": "none"},
        "is_not_empty": {"label": "Is Not Empty", "value_type": "none"},
        "is_null": {"label": "Is Null", "value_type": "none"},
        "is_not_null": {"label": "Is Not Null", "value_type": "none"},
        "is_true": {"label": "Is True", "value_type": "none"},
        "is_false": {"label": "Is False", "value_type": "none"},
        "is_numeric": {"label": "Is Numeric", "value_type": "none"},
        "is_string": {"label": "Is String", "value_type": "none"},
        "is_array": {"label": "Is Array", "value_type": "none"},
    },
    "date": {
        "date_equals": {"label": "Date Equals", "value_type": "date"},
        "date_before": {"label": "Date Before", "value_type": "date"},
        "date_after": {"label": "Date After", "value_type": "date"},
        "date_between": {"label": "Date Between", "value_type": "date_range"},
        "is_today": {"label": "Is Today", "value_type": "none"},
        "is_past": {"label": "Is in Past", "value_type": "none"},
        "is_future": {"label": "Is in Future", "value_type": "none"},
        "days_ago": {"label": "Within Days Ago", "value_type": "number"},
        "days_from_now": {"label": "Within Days From Now", "value_type": "number"},
    },
}


def compile_regex(pattern: Any):
    """支持 /pattern/flags 形式，也接受不带分隔符的模式"""
    pattern = str(pattern)
    flags = 0
    if len(pattern) >= 2 and pattern[0] == "/" and pattern.rfind("/") > 0:
        end = pattern.rfind("/")
        for flag in pattern[end + 1:]:
            flags |= REGEX_FLAGS.get(flag, 0)
        pattern = pattern[1:end]
    return re.compile(pattern, flags)


def _regex_search(subject: Any, pattern: Any) -> bool:
    try:
        return compile_regex(pattern).search(subject) is not None
    except re.error as e:
        logger.debug(f"Invalid regular expression {pattern!r}: {e}")
        return False


def _members(collection: Any) -> list:
    if isinstance(collection, dict):
        return list(collection.values())
    if isinstance(collection, (list, tuple)):
        return list(collection)
    return []


def _contains_member(collection: Any, value: Any) -> bool:
    return any(loose_equals(member, value) for member in _members(collection))


def _has_key(collection: Any, key: Any) -> bool:
    if isinstance(collection, dict):
        return key in collection or str(key) in collection
    if isinstance(collection, (list, tuple)) and is_numeric(key):
        return 0 <= int(leading_number(key)) < len(collection)
    return False


def _in_range(value: Any, bounds: Any, convert: Callable) -> bool:
    low, high = convert(bounds[0]), convert(bounds[1])
    current = convert(value)
    if current is None or low is None or high is None:
        return False
    return low <= current <= high


class ConditionEvaluator:
    """
    条件评估器

    支持三种形式：
    - 结构化条件 ``{"field": ..., "operator": ..., "value": ...}``
    - 条件组（and/or/xor/nor/nand，可嵌套）
    - 表达式字符串
    """

    def __init__(self, resolver: ValueResolver = None, clock: Clock = None):
        self.resolver = resolver or ValueResolver()
        self.clock = clock or utc_now
        self.operators: Dict[str, Callable[[Any, Any], Any]] = {}
        self.functions: Dict[str, Callable] = build_default_functions(self.clock)
        self._register_default_operators()

    def _timestamp(self, value: Any) -> Optional[float]:
        parsed = parse_date(value, self.clock)
        return parsed.timestamp() if parsed else None

    def _date_key(self, value: Any) -> Optional[str]:
        parsed = parse_date(value, self.clock)
        return parsed.date().isoformat() if parsed else None

    def _days_between(self, later: Optional[float], earlier: Optional[float]) -> Optional[float]:
        if later is None or earlier is None:
            return None
        return (later - earlier) / 86400

    def _register_default_operators(self):
        """注册默认运算符"""
        num = leading_number
        ts = self._timestamp
        now = lambda: self.clock().timestamp()

        def _date_compare(a, b, predicate):
            left, right = ts(a), ts(b)
            return left is not None and right is not None and predicate(left, right)

        def _within_days(a, b, forward):
            current = ts(a)
            if current is None:
                return False
            days = (current - now()) / 86400 if forward else (now() - current) / 86400
            return days <= int(num(b))

        ops = {
            # 相等
            "equals": loose_equals,
            "not_equals": lambda a, b: not loose_equals(a, b),
            "strict_equals": strict_equals,
            "strict_not_equals": lambda a, b: not strict_equals(a, b),

            # 数值
            "greater_than": lambda a, b: num(a) > num(b),
            "greater_than_or_equals": lambda a, b: num(a) >= num(b),
            "less_than": lambda a, b: num(a) < num(b),
            "less_than_or_equals": lambda a, b: num(a) <= num(b),
            "between": lambda a, b: _in_range(a, b, num),
            "not_between": lambda a, b: not _in_range(a, b, num),

            # 字符串
            "contains": lambda a, b: isinstance(a, str) and str(b) in a,
            "not_contains": lambda a, b: isinstance(a, str) and str(b) not in a,
            "starts_with": lambda a, b: isinstance(a, str) and a.startswith(str(b)),
            "ends_with": lambda a, b: isinstance(a, str) and a.endswith(str(b)),
            "matches": lambda a, b: isinstance(a, str) and _regex_search(a, b),
            "not_matches": lambda a, b: isinstance(a, str) and not _regex_search(a, b),
            "contains_i": lambda a, b: isinstance(a, str) and str(b).lower() in a.lower(),
            "equals_i": lambda a, b: isinstance(a, str) and a.lower() == str(b).lower(),

            # 数组
            "in": lambda a, b: isinstance(b, (list, tuple, dict)) and _contains_member(b, a),
            "not_in": lambda a, b: isinstance(b, (list, tuple, dict)) and not _contains_member(b, a),
            "has_key": _has_key,
            "has_value": lambda a, b: isinstance(a, (list, tuple, dict)) and _contains_member(a, b),
            "array_contains": lambda a, b: isinstance(a, (list, tuple, dict)) and _contains_member(a, b),
            "array_count": lambda a, b: isinstance(a, (list, tuple, dict)) and len(a) == num(b),
            "array_count_gt": lambda a, b: isinstance(a, (list, tuple, dict)) and len(a) > num(b),
            "array_count_lt": lambda a, b: isinstance(a, (list, tuple, dict)) and len(a) < num(b),

            # 类型
            "is_empty": lambda a, b: not is_truthy(a),
            "is_not_empty": lambda a, b: is_truthy(a),
            "is_null": lambda a, b: a is None,
            "is_not_null": lambda a, b: a is not None,
            "is_true": lambda a, b: a is True or a in ("true", "1") or (type(a) is int and a == 1),
            "is_false": lambda a, b: a is False or a in ("false", "0") or (type(a) is int and a == 0),
            "is_numeric": lambda a, b: is_numeric(a),
            "is_string": lambda a, b: isinstance(a, str),
            "is_array": lambda a, b: isinstance(a, (list, tuple, dict)),

            # 日期
            "date_equals": lambda a, b: self._date_key(a) is not None and self._date_key(a) == self._date_key(b),
            "date_before": lambda a, b: _date_compare(a, b, lambda x, y: x < y),
            "date_after": lambda a, b: _date_compare(a, b, lambda x, y: x > y),
            "date_between": lambda a, b: _in_range(a, b, ts),
            "is_today": lambda a, b: self._date_key(a) == self.clock().date().isoformat(),
            "is_past": lambda a, b: ts(a) is not None and ts(a) < now(),
            "is_future": lambda a, b: ts(a) is not None and ts(a) > now(),
            "days_ago": lambda a, b: _within_days(a, b, forward=False),
            "days_from_now": lambda a, b: _within_days(a, b, forward=True),
        }
        self.operators.update(ops)

    def register_operator(self, name: str, callback: Callable[[Any, Any], Any]):
        """注册自定义运算符"""
        self.operators[name] = callback

    def register_function(self, name: str, callback: Callable):
        """注册自定义函数"""
        self.functions[name] = callback

    def get_operators(self) -> List[str]:
        return list(self.operators.keys())

    def get_functions(self) -> List[str]:
        return list(self.functions.keys())

    def get_operator_info(self) -> Dict[str, Dict[str, Dict[str, str]]]:
        return OPERATOR_INFO

    def get_field_value(self, path: str, context: Dict[str, Any]) -> Any:
        return get_field_value(path, context)

    def evaluate(self, condition: Union[Dict[str, Any], str], context: Dict[str, Any] = None) -> bool:
        """
        评估单个条件

        Args:
            condition: 结构化条件、表达式字符串或标量
            context: 变量上下文

        Raises:
            UnknownOperatorError: 运算符未注册
        """
        context = context or {}
        if isinstance(condition, str):
            return is_truthy(self.evaluate_expression(condition, context))
        if not isinstance(condition, dict):
            # YAML 中的 true/false 或数字
            return is_truthy(condition)

        field = condition.get("field", "")
        operator = condition.get("operator") or "equals"
        value = condition.get("value")

        field_value = self.get_field_value(field, context)

        if isinstance(value, str) and value.startswith("{{"):
            value = self.resolver.resolve_value(value, context)

        operator_fn = self.operators.get(operator)
        if operator_fn is None:
            raise UnknownOperatorError(operator)

        try:
            return bool(operator_fn(field_value, value))
        except (TypeError, ValueError, IndexError, KeyError, InvalidExpressionError) as e:
            logger.debug(f"Operator '{operator}' could not be applied to {field_value!r}: {e}")
            return False

    def evaluate_group(self, conditions: Union[List[Any], Dict[str, Any]], context: Dict[str, Any] = None,
                       logic: str = "and") -> bool:
        """评估条件组"""
        if not conditions:
            return True

        if isinstance(conditions, dict) and "conditions" in conditions:
            logic = conditions.get("logic") or logic
            conditions = conditions["conditions"]
            if not conditions:
                return True

        results = []
        for condition in conditions:
            if isinstance(condition, dict) and "conditions" in condition:
                results.append(self.evaluate_group(
                    condition["conditions"],
                    context,
                    condition.get("logic") or "and"
                ))
            else:
                results.append(self.evaluate(condition, context))

        logic = str(logic).lower()
        if logic == "or":
            return any(results)
        if logic == "xor":
            return sum(1 for result in results if result) == 1
        if logic == "nor":
            return not any(results)
        if logic == "nand":
            return not all(results)
        return all(results)

    def evaluate_expression(self, expression: str, context: Dict[str, Any] = None) -> Any:
        """
        评估表达式字符串

        先替换 ``{{path}}`` 引用为表达式字面量，再解析求值。
        无法解析或求值的表达式结果为 False。
        """
        context = context or {}
        expression = str(expression).strip()
        if expression == "true":
            return True
        if expression == "false":
            return False

        expression = REFERENCE_PATTERN.sub(
            lambda m: value_to_expression(get_field_value(m.group(1).strip(), context)),
            expression
        )

        try:
            tree = parse_expression(expression, self.functions)
            return evaluate_ast(tree, self.functions, context)
        except InvalidExpressionError as e:
            logger.debug(f"Invalid expression {expression!r}: {e}")
            return False
