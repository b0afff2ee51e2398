"""
工作流解析器
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from ..exceptions import WorkflowParseError, WorkflowValidationError
from ..models.workflow import Workflow


logger = logging.getLogger(__name__)


class WorkflowParser:
    """工作流解析器"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> Workflow:
        """
        解析工作流定义

        Args:
            source: 工作流定义来源，可以是文件路径、YAML/JSON 字符串或字典

        Returns:
            Workflow: 解析并验证后的工作流对象
        """
        if isinstance(source, dict):
            return self._parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if "\n" not in source and Path(source).is_file():
                return self.parse_file(Path(source))
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Union[str, Path]) -> Workflow:
        """解析工作流文件"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")
        if not file_path.is_file():
            raise WorkflowParseError(f"Workflow file not found: {file_path}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        data = self.parsers[suffix](content)
        logger.debug(f"Parsed workflow file {file_path}")
        return self._parse_dict(data)

    def parse_string(self, content: str) -> Workflow:
        """解析工作流字符串，JSON 是 YAML 的子集，统一按 YAML 解析"""
        return self._parse_dict(self._parse_yaml(content))

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def _parse_dict(self, data: Any) -> Workflow:
        """解析字典格式的工作流定义"""
        if not isinstance(data, dict):
            raise WorkflowParseError(f"Workflow definition must be a mapping, got {type(data).__name__}")

        if isinstance(data.get('workflow'), dict):
            data = data['workflow']

        try:
            workflow = Workflow.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise WorkflowParseError(f"Invalid workflow definition: {e}")

        errors = workflow.validate()
        if errors:
            raise WorkflowValidationError("Workflow validation failed", errors)

        return workflow

    def to_yaml(self, workflow: Workflow) -> str:
        """导出为 YAML"""
        return yaml.safe_dump(workflow.to_dict(), allow_unicode=True, sort_keys=False)

    def to_json(self, workflow: Workflow) -> str:
        """导出为 JSON"""
        return json.dumps(workflow.to_dict(), ensure_ascii=False, indent=2)
