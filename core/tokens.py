"""
Token 估算与时间戳工具。
中文字符按 1 token 计，英文单词按 1.3 token 计。
"""
import math
import re
import time

CJK_PATTERN = re.compile(r"[一-龥]")
LATIN_WORD_PATTERN = re.compile(r"[a-zA-Z]+")

def estimate_tokens(text: str) -> int:
    """估算文本的 token 数量"""
    if not text:
        return 0
    cjk_chars = len(CJK_PATTERN.findall(text))
    latin_words = len(LATIN_WORD_PATTERN.findall(text))
    return math.ceil(cjk_chars + latin_words * 1.3)

def now_ms() -> int:
    """当前时间（毫秒时间戳）"""
    return int(time.time() * 1000)
