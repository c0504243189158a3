"""
JSON 修复工具
模型输出的 JSON 经常被包在代码块里、带有解释文字、尾随逗号或被截断。
按由轻到重的顺序尝试多种修复策略，全部失败时抛出 OutputParseError。
"""
import json
import logging
import re
from typing import Any, List, Optional

from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import JsonOutputParser
from langchain_core.utils.json import parse_partial_json

from core.exceptions import OutputParseError

logger = logging.getLogger(__name__)

CODE_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
TRAILING_COMMA_PATTERN = re.compile(r",\s*([}\]])")
SINGLE_QUOTED_KEY_PATTERN = re.compile(r"'([^']+)'\s*:")
SINGLE_QUOTED_VALUE_PATTERN = re.compile(r":\s*'([^']*)'")
UNQUOTED_KEY_PATTERN = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")
UNDEFINED_VALUE_PATTERN = re.compile(r":\s*undefined\s*([,}\]])")
ADJACENT_OBJECTS_PATTERN = re.compile(r"}\s*{")

def _find_matching_brackets(text: str, open_char: str, close_char: str) -> Optional[str]:
    """从第一个开括号开始做括号匹配（忽略字符串内部的括号），返回完整片段"""
    start = text.find(open_char)
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == open_char:
            depth += 1
        elif ch == close_char:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None

def find_complete_json(text: str) -> Optional[str]:
    """找出文本中最长的完整 JSON 对象或数组"""
    candidates = [
        c for c in (_find_matching_brackets(text, "{", "}"), _find_matching_brackets(text, "[", "]")) if c
    ]
    if not candidates:
        return None
    return max(candidates, key=len)

def fix_common_errors(text: str) -> str:
    """修复常见的非标准 JSON 写法"""
    text = TRAILING_COMMA_PATTERN.sub(r"\1", text)
    text = SINGLE_QUOTED_KEY_PATTERN.sub(r'"\1":', text)
    text = SINGLE_QUOTED_VALUE_PATTERN.sub(r': "\1"', text)
    text = UNQUOTED_KEY_PATTERN.sub(r'\1"\2":', text)
    text = UNDEFINED_VALUE_PATTERN.sub(r":null\1", text)
    text = ADJACENT_OBJECTS_PATTERN.sub("},{", text)
    return text

def _try_loads(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None

def repair_and_parse(response: str) -> Any:
    """
    解析模型输出的 JSON。

    策略顺序：JsonOutputParser 直接解析 -> 提取代码块 -> 括号匹配 -> 修复常见错误 -> 补全被截断的结构。

    Raises:
        OutputParseError: 所有策略都失败。
    """
    if not response or not response.strip():
        raise OutputParseError("Empty model output, nothing to parse")

    try:
        data = JsonOutputParser().parse(response)
        if data is not None:
            return data
    except OutputParserException:
        pass

    attempts: List[str] = []
    json_str = response.strip()

    match = CODE_BLOCK_PATTERN.search(response)
    if match:
        json_str = match.group(1).strip()
        attempts.append("extracted_from_code_block")

    extracted = find_complete_json(json_str)
    if extracted and extracted != json_str:
        json_str = extracted
        attempts.append("bracket_matching")

    data = _try_loads(json_str)
    if data is not None:
        logger.debug(f"JSON 修复成功: {attempts}")
        return data

    fixed = fix_common_errors(json_str)
    if fixed != json_str:
        attempts.append("fixed_common_errors")
        data = _try_loads(fixed)
        if data is not None:
            logger.debug(f"JSON 修复成功: {attempts}")
            return data

    # 截断的输出：从第一个开括号起补全未闭合的结构
    start_positions = [p for p in (fixed.find("{"), fixed.find("[")) if p != -1]
    if start_positions:
        attempts.append("partial_completion")
        try:
            data = parse_partial_json(fixed[min(start_positions):])
        except json.JSONDecodeError:
            data = None
        if data is not None:
            logger.warning(f"模型输出不完整，已按部分 JSON 补全解析: {attempts}")
            return data

    logger.error(f"JSON 解析失败，尝试过的策略: {attempts}")
    raise OutputParseError(
        f"Failed to parse JSON after {len(attempts)} repair attempts. "
        f"Last attempt: {fixed[:200]}..."
    )
