"""
条件表达式求值器

表达式先做变量替换（以 JSON 字面量形式代入），再按受限语法求值：
字面量、比较运算、逻辑运算、括号和四则运算。不支持变量名、函数调用和属性访问。
比较、算术与真值判断遵循 JavaScript 语义：=== 区分类型，== 与大小比较会做数字转换。
"""
import ast
import json
import logging
import math
import operator
import re
from typing import Any, Callable, Dict

from .variables import PLACEHOLDER_PATTERN


logger = logging.getLogger(__name__)


class ConditionSyntaxError(ValueError):
    """表达式包含不支持的语法"""
    pass


# 运算符改写表，按长度优先匹配；严格相等借用 is / is not 表示
_OPERATOR_REWRITES = [
    ("===", " is "),
    ("!==", " is not "),
    ("&&", " and "),
    ("||", " or "),
]

_LITERAL_WORDS = {
    "true": "True",
    "false": "False",
    "null": "None",
    "undefined": "None",
}

_WORD_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

_DECIMAL_PATTERN = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_HEX_PATTERN = re.compile(r"^0[xX][0-9a-fA-F]+$")
_INFINITY_PATTERN = re.compile(r"^([+-]?)Infinity$")


def js_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def to_string(value: Any) -> str:
    kind = js_type(value)
    if kind == "null":
        return "null"
    if kind == "boolean":
        return "true" if value else "false"
    if kind == "number":
        if isinstance(value, float):
            if math.isnan(value):
                return "NaN"
            if math.isinf(value):
                return "Infinity" if value > 0 else "-Infinity"
            if value.is_integer() and abs(value) < 1e21:
                return str(int(value))
        return str(value)
    if kind == "string":
        return value
    return to_primitive(value)


def to_primitive(value: Any) -> Any:
    """对象转原始值：数组按逗号连接，其余对象为 [object Object]"""
    if isinstance(value, (list, tuple)):
        return ",".join("" if item is None else to_string(item) for item in value)
    if isinstance(value, dict):
        return "[object Object]"
    return value


def to_number(value: Any) -> float:
    kind = js_type(value)
    if kind == "null":
        return 0.0
    if kind == "boolean":
        return 1.0 if value else 0.0
    if kind == "number":
        return float(value)
    if kind == "object":
        return to_number(to_primitive(value))

    text = value.strip()
    if not text:
        return 0.0
    if _DECIMAL_PATTERN.match(text):
        return float(text)
    if _HEX_PATTERN.match(text):
        return float(int(text, 16))
    infinity = _INFINITY_PATTERN.match(text)
    if infinity:
        return -math.inf if infinity.group(1) == "-" else math.inf
    return math.nan


def truthy(value: Any) -> bool:
    kind = js_type(value)
    if kind == "number":
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if kind == "object":
        return True
    return bool(value)


def strict_equals(left: Any, right: Any) -> bool:
    """=== ：类型不同即不相等，布尔值不等于任何数字"""
    kind = js_type(left)
    if kind != js_type(right):
        return False
    if kind == "object":
        # 对象按引用比较，代入的字面量每次都是新对象
        return left is right
    return left == right


def loose_equals(left: Any, right: Any) -> bool:
    """== ：按 JavaScript 抽象相等规则转换后比较"""
    left_kind, right_kind = js_type(left), js_type(right)
    if left_kind == right_kind:
        return strict_equals(left, right)
    if "null" in (left_kind, right_kind):
        return False
    if left_kind == "boolean":
        return loose_equals(to_number(left), right)
    if right_kind == "boolean":
        return loose_equals(left, to_number(right))
    if {left_kind, right_kind} == {"number", "string"}:
        return to_number(left) == to_number(right)
    if left_kind == "object":
        return loose_equals(to_primitive(left), right)
    if right_kind == "object":
        return loose_equals(left, to_primitive(right))
    return False


def _relational(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def apply(left: Any, right: Any) -> bool:
        left, right = to_primitive(left), to_primitive(right)
        if isinstance(left, str) and isinstance(right, str):
            return compare(left, right)
        left_number, right_number = to_number(left), to_number(right)
        if math.isnan(left_number) or math.isnan(right_number):
            return False
        return compare(left_number, right_number)
    return apply


def _numeric(value: Any) -> Any:
    return value if js_type(value) == "number" else to_number(value)


def js_add(left: Any, right: Any) -> Any:
    left, right = to_primitive(left), to_primitive(right)
    if isinstance(left, str) or isinstance(right, str):
        return to_string(left) + to_string(right)
    return _numeric(left) + _numeric(right)


def js_divide(left: Any, right: Any) -> Any:
    left, right = _numeric(left), _numeric(right)
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right


def js_modulo(left: Any, right: Any) -> Any:
    left, right = _numeric(left), _numeric(right)
    if right == 0 or math.isinf(left) or math.isnan(left) or math.isnan(right):
        return math.nan
    if math.isinf(right):
        return left
    if isinstance(left, int) and isinstance(right, int):
        return int(math.fmod(left, right))
    return math.fmod(left, right)


_BINARY_OPS = {
    ast.Add: js_add,
    ast.Sub: lambda left, right: _numeric(left) - _numeric(right),
    ast.Mult: lambda left, right: _numeric(left) * _numeric(right),
    ast.Div: js_divide,
    ast.Mod: js_modulo,
}

_COMPARE_OPS = {
    ast.Is: strict_equals,
    ast.IsNot: lambda left, right: not strict_equals(left, right),
    ast.Eq: loose_equals,
    ast.NotEq: lambda left, right: not loose_equals(left, right),
    ast.Lt: _relational(operator.lt),
    ast.LtE: _relational(operator.le),
    ast.Gt: _relational(operator.gt),
    ast.GtE: _relational(operator.ge),
}


def translate(expression: str) -> str:
    """将 JS 风格运算符与字面量改写为 Python 表达式，字符串字面量内部保持不变"""
    out = []
    i = 0
    length = len(expression)
    while i < length:
        ch = expression[i]
        if ch in ("'", '"'):
            end = i + 1
            while end < length and expression[end] != ch:
                end += 2 if expression[end] == "\\" else 1
            if end >= length:
                raise ConditionSyntaxError("unterminated string literal")
            out.append(expression[i:end + 1])
            i = end + 1
            continue

        for token, replacement in _OPERATOR_REWRITES:
            if expression.startswith(token, i):
                out.append(replacement)
                i += len(token)
                break
        else:
            if ch == "!" and not expression.startswith("!=", i):
                out.append(" not ")
                i += 1
            elif ch.isalpha() or ch == "_":
                word = _WORD_PATTERN.match(expression, i).group(0)
                out.append(_LITERAL_WORDS.get(word, word))
                i += len(word)
            else:
                out.append(ch)
                i += 1
    return "".join(out).strip()


class _SafeEvaluator:
    """只允许字面量与运算符的 AST 求值"""

    def eval(self, source: str) -> Any:
        tree = ast.parse(source, mode="eval")
        return self._eval_node(tree.body)

    def _eval_node(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.List):
            return [self._eval_node(item) for item in node.elts]

        if isinstance(node, ast.Dict):
            return {
                self._eval_node(key): self._eval_node(value)
                for key, value in zip(node.keys, node.values)
            }

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result = True
                for value in node.values:
                    result = self._eval_node(value)
                    if not truthy(result):
                        return result
                return result
            result = False
            for value in node.values:
                result = self._eval_node(value)
                if truthy(result):
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            operand = self._eval_node(node.operand)
            if isinstance(node.op, ast.Not):
                return not truthy(operand)
            if isinstance(node.op, ast.USub):
                return -_numeric(operand)
            if isinstance(node.op, ast.UAdd):
                return _numeric(operand)
            raise ConditionSyntaxError("unsupported unary operator")

        if isinstance(node, ast.BinOp):
            op = _BINARY_OPS.get(type(node.op))
            if op is None:
                raise ConditionSyntaxError(f"unsupported operator: {type(node.op).__name__}")
            return op(self._eval_node(node.left), self._eval_node(node.right))

        if isinstance(node, ast.Compare):
            # 链式比较按左结合求值，上一步的布尔结果作为下一步的左操作数
            result = self._eval_node(node.left)
            for cmp_op, comparator in zip(node.ops, node.comparators):
                op = _COMPARE_OPS.get(type(cmp_op))
                if op is None:
                    raise ConditionSyntaxError(f"unsupported comparison: {type(cmp_op).__name__}")
                result = op(result, self._eval_node(comparator))
            return result

        raise ConditionSyntaxError(f"unsupported expression: {type(node).__name__}")


class ConditionEvaluator:
    """条件求值器，任何错误都视为条件不成立"""

    def __init__(self):
        self._evaluator = _SafeEvaluator()

    def substitute(self, expression: str, variables: Dict[str, Any]) -> str:
        """以 JSON 字面量替换已知变量，未知变量保留原样"""

        def replace(match: "re.Match") -> str:
            name = match.group(1).strip()
            if name in variables:
                return json.dumps(variables[name], ensure_ascii=True, default=str)
            return match.group(0)

        return PLACEHOLDER_PATTERN.sub(replace, expression)

    def evaluate(self, expression: str, variables: Dict[str, Any]) -> bool:
        """求值条件表达式"""
        if expression is None:
            return False
        source = self.substitute(str(expression), variables)
        try:
            return truthy(self._evaluator.eval(translate(source)))
        except Exception as e:
            logger.warning(f"Condition '{expression}' evaluated as false: {e}")
            return False
