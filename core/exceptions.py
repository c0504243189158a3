"""
自定义异常类
用于在分块、检索、路由与人工审核各层之间传递具有明确语义的错误信息。
"""

class PipelineError(Exception):
    """解析流水线中所有可预期错误的基类"""
    pass

class ValidationError(PipelineError):
    """请求不合法，例如检查点不存在或不处于待审核状态"""
    pass

class StoryBibleLockedError(ValidationError):
    """故事圣经已锁定，必须先显式解锁才能修改"""
    pass

class NoSuitableModelError(PipelineError):
    """没有任何已注册模型满足任务的硬性要求"""

    def __init__(self, task_type: str, missing_capabilities, message: str = None):
        self.task_type = task_type
        self.missing_capabilities = list(missing_capabilities)
        super().__init__(message or (
            f"No suitable model found for task {task_type}. "
            f"Please register a model with required capabilities: {', '.join(self.missing_capabilities)}"
        ))

class DimensionMismatchError(PipelineError):
    """两个嵌入向量维度不一致"""
    pass

class ReviewTimeoutError(PipelineError, TimeoutError):
    """等待人工审核超时"""
    pass

class ProviderError(PipelineError):
    """文本生成服务调用失败"""
    pass

class StageRejectedError(PipelineError):
    """某个阶段的产出被审核人驳回，流水线在该阶段停止"""

    def __init__(self, stage: str, checkpoint_id: str, notes: str = None):
        self.stage = stage
        self.checkpoint_id = checkpoint_id
        self.notes = notes
        detail = f": {notes}" if notes else ""
        super().__init__(f"Stage {stage} rejected at checkpoint {checkpoint_id}{detail}")

class OutputParseError(PipelineError):
    """模型输出无法解析为预期的结构化数据"""
    pass

class ConfigurationError(PipelineError):
    """当应用配置不正确或缺失时发生错误"""
    pass
