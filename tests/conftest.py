"""
测试公共夹具
提供: 假的文本生成服务、示例小说文本
"""
from unittest.mock import AsyncMock

import pytest

from core.schemas import TextGenerationResult
from tests.helpers import SAMPLE_NOVEL


@pytest.fixture
def sample_novel():
    return SAMPLE_NOVEL


@pytest.fixture
def text_generator():
    """总是成功返回固定内容的文本生成服务"""
    generator = AsyncMock()
    generator.generate_text.return_value = TextGenerationResult(success=True, data="生成的内容")
    return generator
