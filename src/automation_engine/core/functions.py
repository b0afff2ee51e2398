"""
表达式内置函数库
"""
import hashlib
import json
import math
import random
import re
from datetime import date, datetime, timezone
from functools import cmp_to_key
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from ..exceptions import InvalidExpressionError
from .expression import compare, is_truthy, to_number
from .resolver import stringify


Clock = Callable[[], datetime]

LEADING_NUMBER = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")
RELATIVE_PART = re.compile(
    r"([+-]?\d+)\s*(second|sec|minute|min|hour|day|week|month|year)s?",
    re.IGNORECASE
)

RELATIVE_UNITS = {
    "second": "seconds", "sec": "seconds",
    "minute": "minutes", "min": "minutes",
    "hour": "hours", "day": "days", "week": "weeks",
    "month": "months", "year": "years",
}

# PHP 风格 date() 格式字符到 strftime 的映射
DATE_FORMAT_CODES = {
    "Y": "%Y", "y": "%y", "m": "%m", "d": "%d", "H": "%H", "i": "%M", "s": "%S",
    "D": "%a", "l": "%A", "M": "%b", "F": "%B", "A": "%p",
}

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_date(value: Any, clock: Clock = utc_now) -> Optional[datetime]:
    """解析日期，无法解析时返回 None；无时区信息的时间按 UTC 处理"""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        lowered = text.lower()
        now = clock()
        if lowered == "now":
            return now
        if lowered in ("today", "tomorrow", "yesterday"):
            midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
            offset = {"today": 0, "tomorrow": 1, "yesterday": -1}[lowered]
            return midnight + relativedelta(days=offset)
        if text[:1] in "+-" and RELATIVE_PART.search(text):
            return add_interval(now, text)
        try:
            parsed = date_parser.parse(text)
        except (ValueError, OverflowError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def add_interval(moment: datetime, interval: str) -> datetime:
    """应用 "+1 day"、"-2 hours 30 minutes" 之类的相对时间"""
    parts = RELATIVE_PART.findall(str(interval))
    if not parts:
        raise ValueError(f"Invalid interval: {interval}")
    delta = relativedelta()
    for amount, unit in parts:
        delta += relativedelta(**{RELATIVE_UNITS[unit.lower()]: int(amount)})
    return moment + delta


def timestamp(value: Any, clock: Clock = utc_now) -> Optional[float]:
    parsed = parse_date(value, clock)
    return parsed.timestamp() if parsed else None


def format_date(fmt: str, moment: datetime) -> str:
    """按 PHP date() 格式格式化"""
    output = []
    for char in str(fmt):
        if char in DATE_FORMAT_CODES:
            output.append(moment.strftime(DATE_FORMAT_CODES[char]))
        elif char == "j":
            output.append(str(moment.day))
        elif char == "n":
            output.append(str(moment.month))
        elif char == "G":
            output.append(str(moment.hour))
        elif char == "w":
            output.append(str((moment.weekday() + 1) % 7))
        elif char == "N":
            output.append(str(moment.isoweekday()))
        elif char == "U":
            output.append(str(int(moment.timestamp())))
        else:
            output.append(char)
    return "".join(output)


def leading_number(value: Any) -> float:
    """类 PHP 的数值转换："12abc" -> 12，无法转换时为 0"""
    if isinstance(value, (bool, int, float)) or value is None:
        return float(to_number(value))
    if isinstance(value, (list, dict)):
        return 1.0 if value else 0.0
    match = LEADING_NUMBER.match(str(value))
    return float(match.group(0)) if match else 0.0


def _as_int(value: Any) -> int:
    return int(leading_number(value))


def _php_round(number: Any, precision: Any = 0):
    number = float(to_number(number))
    precision = int(to_number(precision))
    factor = 10 ** precision
    rounded = math.floor(abs(number) * factor + 0.5) / factor
    rounded = math.copysign(rounded, number)
    return int(rounded) if precision <= 0 else rounded


def _substr(text: Any, start: Any, length: Any = None) -> str:
    text = stringify(text)
    start = int(to_number(start))
    tail = text[start:] if start >= -len(text) else text
    if length is None:
        return tail
    length = int(to_number(length))
    return tail[:length]


def _numbers(args) -> list:
    if len(args) == 1 and isinstance(args[0], (list, tuple)):
        args = args[0]
    elif len(args) == 1 and isinstance(args[0], dict):
        args = list(args[0].values())
    return list(args)


def _first(items: Any) -> Any:
    if isinstance(items, dict):
        items = list(items.values())
    if isinstance(items, (list, tuple)) and items:
        return items[0]
    return None


def _last(items: Any) -> Any:
    if isinstance(items, dict):
        items = list(items.values())
    if isinstance(items, (list, tuple)) and items:
        return items[-1]
    return None


def unique_values(items: Any) -> list:
    if isinstance(items, dict):
        items = list(items.values())
    result = []
    for item in items or []:
        if not any(_same_string(item, seen) for seen in result):
            result.append(item)
    return result


def _same_string(left: Any, right: Any) -> bool:
    # 与 PHP array_unique 一致，按字符串形式比较
    return stringify(left) == stringify(right)


def sort_values(items: Any, key: Any = None, descending: bool = False) -> list:
    items = list(items.values()) if isinstance(items, dict) else list(items or [])

    def _key_of(item):
        if key:
            return item.get(key, 0) if isinstance(item, dict) else 0
        return item

    def _cmp(left, right):
        try:
            return compare(_key_of(left), _key_of(right))
        except InvalidExpressionError:
            return compare(stringify(_key_of(left)), stringify(_key_of(right)))

    return sorted(items, key=cmp_to_key(_cmp), reverse=descending)


def pluck_values(items: Any, key: str) -> list:
    if isinstance(items, dict):
        items = list(items.values())
    return [item[key] for item in items or [] if isinstance(item, dict) and key in item]


def _merge(*collections):
    if collections and all(isinstance(c, dict) for c in collections):
        merged = {}
        for collection in collections:
            merged.update(collection)
        return merged
    merged = []
    for collection in collections:
        if isinstance(collection, dict):
            merged.extend(collection.values())
        elif isinstance(collection, (list, tuple)):
            merged.extend(collection)
        else:
            merged.append(collection)
    return merged


def _slice(items: Any, offset: Any, length: Any = None) -> list:
    if isinstance(items, dict):
        items = list(items.values())
    items = list(items or [])
    offset = int(to_number(offset))
    tail = items[offset:]
    if length is None:
        return tail
    length = int(to_number(length))
    return tail[:length]


def _coalesce(*args):
    for arg in args:
        if arg is not None and arg != "":
            return arg
    return None


def _typeof(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "double"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple, dict)):
        return "array"
    return "object"


def _json_decode(value: Any) -> Any:
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return None


def _length(value: Any) -> int:
    if isinstance(value, str):
        return len(value)
    if isinstance(value, (list, tuple, dict)):
        return len(value)
    return 0


def _keys(items: Any) -> list:
    if isinstance(items, dict):
        return list(items.keys())
    return list(range(len(items or [])))


def _values(items: Any) -> list:
    if isinstance(items, dict):
        return list(items.values())
    return list(items or [])


def _reverse(items: Any):
    if isinstance(items, str):
        return items[::-1]
    return list(reversed(_values(items)))


def build_default_functions(clock: Clock = utc_now) -> Dict[str, Callable]:
    """构建默认函数注册表"""

    def _date(fmt, ts=None):
        moment = clock() if ts is None else parse_date(ts, clock)
        if moment is None:
            return False
        return format_date(fmt, moment)

    def _strtotime(value):
        ts = timestamp(value, clock)
        return int(ts) if ts is not None else False

    def _date_add(value, interval):
        moment = parse_date(value, clock)
        if moment is None:
            return False
        return add_interval(moment, interval).strftime(DATETIME_FORMAT)

    def _date_diff(first, second):
        a, b = timestamp(first, clock), timestamp(second, clock)
        if a is None or b is None:
            return False
        return (a - b) / 86400

    def _date_part(fmt):
        def _part(value):
            moment = parse_date(value, clock)
            return format_date(fmt, moment) if moment else False
        return _part

    return {
        # 字符串
        "length": _length,
        "upper": lambda s: stringify(s).upper(),
        "lower": lambda s: stringify(s).lower(),
        "trim": lambda s: stringify(s).strip(),
        "substr": _substr,
        "replace": lambda s, search, replace: stringify(s).replace(stringify(search), stringify(replace)),
        "split": lambda s, delimiter: stringify(s).split(stringify(delimiter)),
        "join": lambda items, delimiter: stringify(delimiter).join(stringify(i) for i in _values(items)),
        "concat": lambda *args: "".join(stringify(a) for a in args),

        # 数值
        "abs": lambda n: abs(to_number(n)),
        "round": _php_round,
        "floor": lambda n: math.floor(to_number(n)),
        "ceil": lambda n: math.ceil(to_number(n)),
        "min": lambda *args: min(_numbers(args), key=cmp_to_key(compare)),
        "max": lambda *args: max(_numbers(args), key=cmp_to_key(compare)),
        "sum": lambda items: sum(to_number(i) for i in _values(items)),
        "avg": lambda items: (sum(to_number(i) for i in _values(items)) / len(_values(items))) if _values(items) else 0,

        # 日期
        "now": lambda: clock().strftime(DATETIME_FORMAT),
        "today": lambda: clock().strftime("%Y-%m-%d"),
        "date": _date,
        "strtotime": _strtotime,
        "date_add": _date_add,
        "date_diff": _date_diff,
        "year": _date_part("Y"),
        "month": _date_part("m"),
        "day": _date_part("d"),
        "dayofweek": _date_part("w"),

        # 数组
        "count": lambda items: len(items) if isinstance(items, (list, tuple, dict)) else 0,
        "first": _first,
        "last": _last,
        "keys": _keys,
        "values": _values,
        "unique": unique_values,
        "reverse": _reverse,
        "sort": sort_values,
        "pluck": pluck_values,
        "merge": _merge,
        "slice": _slice,

        # 逻辑
        "if": lambda condition, then, otherwise=None: then if is_truthy(condition) else otherwise,
        "coalesce": _coalesce,
        "default": lambda value, fallback: fallback if value is None else value,

        # 类型转换
        "int": _as_int,
        "float": leading_number,
        "string": stringify,
        "bool": is_truthy,
        "json_encode": lambda value: json.dumps(value, ensure_ascii=False, separators=(",", ":")),
        "json_decode": _json_decode,

        # 工具
        "isset": lambda value: value is not None,
        "empty": lambda value: not is_truthy(value),
        "typeof": _typeof,
        "uuid": lambda: str(uuid4()),
        "random": lambda low=0, high=100: random.randint(int(to_number(low)), int(to_number(high))),
        "hash": lambda value, algo="md5": hashlib.new(str(algo), stringify(value).encode("utf-8")).hexdigest(),
    }
