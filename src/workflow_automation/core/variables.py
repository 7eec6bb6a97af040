"""
变量解析器
"""
import re
import logging
from typing import Any, Dict


logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\$\{([^}]+)\}")


class VariableResolver:
    """将模板中的 ${name} 替换为上下文变量值"""

    def resolve(self, template: Any, variables: Dict[str, Any]) -> Any:
        """
        解析模板

        Args:
            template: 模板，非字符串原样返回
            variables: 变量表

        Returns:
            替换后的字符串；未定义的变量保留原占位符
        """
        if not isinstance(template, str):
            return template

        def replace(match: "re.Match") -> str:
            name = match.group(1).strip()
            if name in variables:
                return self.stringify(variables[name])
            return match.group(0)

        return PLACEHOLDER_PATTERN.sub(replace, template)

    @staticmethod
    def stringify(value: Any) -> str:
        if value is None:
            return "null"
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

