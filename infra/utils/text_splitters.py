"""
语义分块器 (Semantic Chunker)
按段落边界切分长篇叙事文本，识别章节标题，并为每个分块附加前序上下文与元数据，
避免固定字符切分打断叙事逻辑。
同时实现 LangChain TextSplitter 接口，可在任何需要切分器的地方直接使用。
"""
from __future__ import annotations
import logging
import re
from dataclasses import replace
from typing import List, Optional, Iterable, Tuple

from langchain_text_splitters import TextSplitter

from core.schemas import Chunk, ChunkBoundary, ChunkMetadata
from core.tokens import estimate_tokens, CJK_PATTERN, LATIN_WORD_PATTERN

logger = logging.getLogger(__name__)

CN_NUMERALS = "零一二三四五六七八九十百千万〇两0-9"

# 章节标题（带括号的标题优先）
CHAPTER_PATTERN = re.compile(
    rf"【第[{CN_NUMERALS}]+[章回节卷]】"
    rf"|\[Chapter\s+\d+[^\]]*\]"
    rf"|(?m:^\s*第[{CN_NUMERALS}]+[章回])"
    r"|(?m:^\s*Chapter\s+\d+\b)",
    re.IGNORECASE,
)
SCENE_BREAK_PATTERN = re.compile(r"^\s*(?:\*\s*){3,}$|^\s*(?:＊\s*){3,}$|^\s*(?:-\s*){3,}$")
SENTENCE_SPLIT_PATTERN = re.compile(r"(?<=[。！？；!?.])")

SPEECH_VERBS = r"(?:说道|问道|笑道|答道|喊道|叫道|说|道|问|答|喊|叫|said|asked|replied|shouted|whispered|answered)"
SPEECH_VERB_PATTERN = re.compile(SPEECH_VERBS, re.IGNORECASE)
QUOTE_PATTERN = re.compile(r"[“\"「『][^”\"」』]*[”\"」』]")
ACTION_PATTERN = re.compile(
    r"[一-龥]{2,}[了着过][。，！？]"
    r"|\b(?:ran|jumped|grabbed|struck|fought|rushed|fled|attacked|pulled|pushed|threw|drew)\b",
    re.IGNORECASE,
)

CN_NAME_PATTERN = re.compile(rf"([一-龥]{{2,3}}?){SPEECH_VERBS}")
EN_NAME_PATTERNS = (
    re.compile(r"\b([A-Z][a-z]+)\s+(?:said|asked|replied|shouted|whispered|answered)\b"),
    re.compile(r"\b(?:said|asked|replied|shouted|whispered|answered)\s+([A-Z][a-z]+)\b"),
)
NAME_STOP_CHARS = set("他她它我你们这那谁有没就又便只也都")
EN_NAME_STOPWORDS = {"He", "She", "It", "They", "We", "You", "I", "The", "Then", "And", "But"}

CN_LOCATION_PATTERN = re.compile(r"(?:在|于|到|去|来)([一-龥]{2,6}?)(?:里|中|上|下|前|后|内|外|旁|边|处)")
EN_LOCATION_PATTERN = re.compile(r"\b(?:in|at|inside|into)\s+the\s+([a-z]+(?:\s+[a-z]+)?)\b")

IMPORTANT_KEYWORDS = (
    "冲突", "战斗", "死亡", "爱", "恨", "秘密", "真相", "决战", "转折", "背叛",
    "conflict", "battle", "fight", "death", "love", "hate", "secret", "truth", "betray", "climax",
)


class SemanticChunker(TextSplitter):
    """
    基于段落与章节边界的语义分块器。

    Args:
        max_tokens: 单个分块的 token 预算。
        extract_metadata: 是否提取角色、场景提示与重要性评分。
        context_chars: 前序上下文截取的字符数。
        known_characters: 已知角色名列表，按字面匹配补充角色识别。
    """

    def __init__(self,
                 max_tokens: int = 500,
                 extract_metadata: bool = False,
                 context_chars: int = 200,
                 known_characters: Optional[Iterable[str]] = None,
                 **kwargs):
        super().__init__(chunk_size=max_tokens, chunk_overlap=0, length_function=estimate_tokens, **kwargs)
        self.max_tokens = max_tokens
        self.extract_metadata = extract_metadata
        if context_chars < 0:
            raise ValueError(f"context_chars must be >= 0, got {context_chars}")
        self.context_chars = context_chars
        self.known_characters = list(known_characters or [])

    def _tail(self, content: str) -> str:
        """前一分块末尾的 context_chars 个字符，为 0 时不带前序上下文"""
        return content[max(0, len(content) - self.context_chars):] if self.context_chars else ""

    def split_text(self, text: str) -> List[str]:
        return [c.content for c in self.chunk(text)]

    def chunk(self, text: str) -> List[Chunk]:
        """
        主分块方法：识别段落与章节 -> 按 token 预算累积 -> 添加前序上下文 -> 提取元数据。
        """
        if not text or not text.strip():
            return []

        pieces: List[Tuple[str, List[ChunkBoundary], bool]] = []
        for start, paragraph in self._iter_paragraphs(text):
            boundaries = [
                ChunkBoundary(type="chapter", position=start + m.start())
                for m in CHAPTER_PATTERN.finditer(paragraph)
            ]
            if SCENE_BREAK_PATTERN.match(paragraph):
                boundaries.append(ChunkBoundary(type="scene", position=start, confidence=50))
            starts_chapter = bool(boundaries) and boundaries[0].type == "chapter" and boundaries[0].position == start
            for i, segment in enumerate(self._split_oversized(paragraph)):
                pieces.append((segment, boundaries if i == 0 else [], starts_chapter and i == 0))

        contents: List[Tuple[str, List[ChunkBoundary]]] = []
        current_parts: List[str] = []
        current_boundaries: List[ChunkBoundary] = []
        current_tokens = 0

        for segment, boundaries, starts_chapter in pieces:
            tokens = estimate_tokens(segment)
            if current_parts and (starts_chapter or current_tokens + tokens > self.max_tokens):
                contents.append(("\n".join(current_parts), current_boundaries))
                current_parts, current_boundaries, current_tokens = [], [], 0
            current_parts.append(segment)
            current_boundaries.extend(boundaries)
            current_tokens += tokens

        if current_parts:
            contents.append(("\n".join(current_parts), current_boundaries))

        chunks = []
        for index, (content, boundaries) in enumerate(contents):
            prev_context = self._tail(contents[index - 1][0]) if index > 0 else ""
            chunks.append(Chunk(
                id=f"chunk_{index}",
                content=content,
                prev_context=prev_context,
                boundaries=boundaries,
                metadata=self._build_metadata(content),
            ))

        logger.debug(f"文本被切分为 {len(chunks)} 个语义分块 (max_tokens={self.max_tokens})。")
        return chunks

    @staticmethod
    def _iter_paragraphs(text: str):
        """按换行切分段落，返回 (原文偏移, 去除首尾空白的段落)"""
        for m in re.finditer(r"[^\n]+", text):
            paragraph = m.group(0)
            stripped = paragraph.strip()
            if stripped:
                yield m.start() + paragraph.index(stripped[0]), stripped

    def _split_oversized(self, paragraph: str) -> List[str]:
        """超出预算的段落再按句子切分，句子间重新按预算聚合"""
        if estimate_tokens(paragraph) <= self.max_tokens:
            return [paragraph]

        segments, buffer, buffer_tokens = [], "", 0
        for sentence in SENTENCE_SPLIT_PATTERN.split(paragraph):
            if not sentence:
                continue
            tokens = estimate_tokens(sentence)
            if buffer and buffer_tokens + tokens > self.max_tokens:
                segments.append(buffer.strip())
                buffer, buffer_tokens = "", 0
            buffer += sentence
            buffer_tokens += tokens
        if buffer.strip():
            segments.append(buffer.strip())
        return segments

    def _build_metadata(self, content: str) -> ChunkMetadata:
        word_count = len(CJK_PATTERN.findall(content)) + len(LATIN_WORD_PATTERN.findall(content))
        if not self.extract_metadata:
            return ChunkMetadata(word_count=word_count, chunk_type=self.detect_chunk_type(content))

        keyword_count = sum(1 for kw in IMPORTANT_KEYWORDS if kw in content.lower())
        return ChunkMetadata(
            characters=self.extract_characters(content),
            scene_hint=self.extract_scene_hint(content),
            importance=min(10, 5 + keyword_count),
            word_count=word_count,
            chunk_type=self.detect_chunk_type(content),
        )

    @staticmethod
    def detect_chunk_type(content: str) -> str:
        """对白（引号紧邻说话动词）占多数为 dialogue，存在动作描写为 action，否则为 description"""
        dialogue_count = 0
        for m in QUOTE_PATTERN.finditer(content):
            window = content[max(0, m.start() - 8):m.start()] + content[m.end():m.end() + 8]
            if SPEECH_VERB_PATTERN.search(window):
                dialogue_count += 1
        action_count = len(ACTION_PATTERN.findall(content))

        if dialogue_count > action_count:
            return "dialogue"
        if action_count > 0:
            return "action"
        return "description"

    def extract_characters(self, content: str) -> List[str]:
        names = []
        for m in CN_NAME_PATTERN.finditer(content):
            name = m.group(1)
            if name[0] not in NAME_STOP_CHARS:
                names.append(name)
        for pattern in EN_NAME_PATTERNS:
            names.extend(n for n in pattern.findall(content) if n not in EN_NAME_STOPWORDS)
        names.extend(n for n in self.known_characters if n in content)
        return list(dict.fromkeys(names))

    @staticmethod
    def extract_scene_hint(content: str) -> str:
        m = CN_LOCATION_PATTERN.search(content) or EN_LOCATION_PATTERN.search(content)
        return m.group(1) if m else ""

    def merge_small_chunks(self, chunks: List[Chunk], min_size: int = 500) -> List[Chunk]:
        """
        合并相邻的小分块：内容不足 min_size 字符的分块吸收其后继，不改变顺序。
        合并后重新编号并重建前序上下文。
        """
        merged: List[Chunk] = []
        current: Optional[Chunk] = None

        for chunk in chunks:
            if current is None:
                current = chunk
            elif len(current.content) < min_size:
                current = replace(
                    current,
                    content=current.content + "\n\n" + chunk.content,
                    boundaries=list(current.boundaries) + list(chunk.boundaries),
                    metadata=replace(
                        current.metadata,
                        characters=list(dict.fromkeys(current.metadata.characters + chunk.metadata.characters)),
                        word_count=current.metadata.word_count + chunk.metadata.word_count,
                        importance=max(current.metadata.importance, chunk.metadata.importance),
                    ),
                )
            else:
                merged.append(current)
                current = chunk

        if current is not None:
            merged.append(current)

        return [
            replace(
                chunk,
                id=f"chunk_{index}",
                prev_context=self._tail(merged[index - 1].content) if index > 0 else "",
            )
            for index, chunk in enumerate(merged)
        ]

    @staticmethod
    def get_chunk_at_position(chunks: List[Chunk], position: int) -> Optional[Chunk]:
        """获取拼接后文本中指定字符偏移所在的分块"""
        current_pos = 0
        for chunk in chunks:
            chunk_end = current_pos + len(chunk.content)
            if current_pos <= position < chunk_end:
                return chunk
            current_pos = chunk_end
        return None


def get_text_splitter(full_config: dict = None, **overrides) -> SemanticChunker:
    """
    根据 config.yaml 中的 'chunker' 段实例化语义分块器。
    """
    chunker_config = dict((full_config or {}).get("chunker", {}) or {})
    chunker_config.update(overrides)
    logger.info(f"正在实例化语义分块器: {chunker_config}")
    try:
        return SemanticChunker(
            max_tokens=int(chunker_config.get("max_tokens", 500)),
            extract_metadata=bool(chunker_config.get("extract_metadata", False)),
            context_chars=int(chunker_config.get("context_chars", 200)),
            known_characters=chunker_config.get("known_characters"),
        )
    except (TypeError, ValueError) as e:
        logger.error(f"实例化语义分块器失败: {e}\n使用的参数: {chunker_config}", exc_info=True)
        raise ValueError(f"实例化语义分块器失败: {e}")
