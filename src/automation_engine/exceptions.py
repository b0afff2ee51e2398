"""
自动化引擎异常定义
"""


class WorkflowEngineError(Exception):
    """自动化引擎基础异常"""
    pass


class WorkflowParseError(WorkflowEngineError):
    """工作流解析异常"""
    pass


class WorkflowValidationError(WorkflowEngineError):
    """工作流验证异常"""
    def __init__(self, message: str, errors: list = None):
        self.errors = errors or []
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)


class WorkflowNotFoundError(WorkflowEngineError):
    """工作流不存在"""
    def __init__(self, workflow_id):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class WorkflowInactiveError(WorkflowEngineError):
    """工作流未激活"""
    def __init__(self, workflow_id, status: str):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(f"Workflow is not active: {workflow_id} (status: {status})")


class RateLimitExceededError(WorkflowEngineError):
    """执行频率超限"""
    def __init__(self, workflow_id, limit: int):
        self.workflow_id = workflow_id
        self.limit = limit
        super().__init__(f"Rate limit exceeded for workflow {workflow_id}: {limit} executions per hour")


class WorkflowExecutionError(WorkflowEngineError):
    """工作流执行异常"""
    pass


class NodeExecutionError(WorkflowExecutionError):
    """节点执行异常"""
    def __init__(self, node_id: str, message: str, cause: Exception = None):
        self.node_id = node_id
        self.reason = message
        self.cause = cause
        super().__init__(f"Node '{node_id}' execution failed: {message}")


class UnknownNodeTypeError(WorkflowExecutionError):
    """未知节点类型"""
    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Unknown node type: {node_type}")


class WorkflowTimeoutError(WorkflowExecutionError):
    """工作流超时异常"""
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Workflow execution timeout after {timeout_seconds} seconds")


class MaxIterationsExceededError(WorkflowExecutionError):
    """超出最大遍历次数"""
    def __init__(self, max_iterations: int):
        self.max_iterations = max_iterations
        super().__init__(f"Maximum iterations exceeded: {max_iterations}")


class UnknownOperatorError(WorkflowEngineError):
    """未知条件运算符"""
    def __init__(self, operator: str):
        self.operator = operator
        super().__init__(f"Unknown operator: {operator}")


class InvalidExpressionError(WorkflowEngineError):
    """表达式无法解析或求值"""
    pass


class PersistenceError(WorkflowEngineError):
    """持久化异常"""
    pass
