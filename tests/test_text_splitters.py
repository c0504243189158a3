"""
语义分块器测试
"""
import pytest

from core.schemas import Chunk, ChunkMetadata
from infra.utils.text_splitters import SemanticChunker, get_text_splitter


class TestChunking:
    """段落与章节边界切分"""

    def test_empty_text_returns_no_chunks(self):
        """空文本或只有空白时返回空列表"""
        chunker = SemanticChunker()

        assert chunker.chunk("") == []
        assert chunker.chunk("   \n\n  ") == []

    def test_two_chapter_text(self, sample_novel):
        """两章文本：至少一个分块记录章节边界，第一个之后的分块都有前序上下文"""
        # Arrange
        chunker = SemanticChunker(max_tokens=500)

        # Act
        chunks = chunker.chunk(sample_novel)

        # Assert
        assert len(chunks) == 2
        assert any(b.type == "chapter" for c in chunks for b in c.boundaries)
        assert chunks[0].prev_context == ""
        assert all(c.prev_context for c in chunks[1:])
        assert chunks[1].content.startswith("【第二章】")

    def test_chapter_boundary_position_points_into_source(self, sample_novel):
        """边界位置是原文中的字符偏移"""
        chunks = SemanticChunker().chunk(sample_novel)

        second_chapter = [b for b in chunks[1].boundaries if b.type == "chapter"][0]
        assert sample_novel[second_chapter.position:].startswith("【第二章】")

    def test_prev_context_is_tail_of_previous_chunk(self, sample_novel):
        chunker = SemanticChunker(context_chars=10)

        chunks = chunker.chunk(sample_novel)

        assert chunks[1].prev_context == chunks[0].content[-10:]

    def test_zero_context_chars_disables_prev_context(self, sample_novel):
        chunks = SemanticChunker(context_chars=0).chunk(sample_novel)

        assert len(chunks) == 2
        assert [c.prev_context for c in chunks] == ["", ""]

    def test_paragraphs_accumulate_within_token_budget(self):
        """段落在预算内累积到同一个分块，超出预算时开新分块"""
        # Arrange: 每段 10 个汉字
        text = "\n".join(["一二三四五六七八九十"] * 5)
        chunker = SemanticChunker(max_tokens=25)

        # Act
        chunks = chunker.chunk(text)

        # Assert
        assert [c.content.count("\n") + 1 for c in chunks] == [2, 2, 1]
        assert [c.id for c in chunks] == ["chunk_0", "chunk_1", "chunk_2"]

    def test_oversized_paragraph_is_split_by_sentence(self):
        chunker = SemanticChunker(max_tokens=10)

        chunks = chunker.chunk("一二三四五六七八。一二三四五六七八。")

        assert [c.content for c in chunks] == ["一二三四五六七八。", "一二三四五六七八。"]

    def test_scene_break_is_recorded(self):
        text = "山门前人来人往。\n***\n藏经阁里空无一人。"

        chunks = SemanticChunker().chunk(text)

        assert any(b.type == "scene" for b in chunks[0].boundaries)

    def test_split_text_matches_chunk_contents(self, sample_novel):
        """作为 LangChain TextSplitter 使用时返回分块内容"""
        chunker = SemanticChunker()

        assert chunker.split_text(sample_novel) == [c.content for c in chunker.chunk(sample_novel)]


class TestMetadata:
    """元数据提取"""

    def test_word_count_counts_cjk_chars_and_latin_words(self):
        chunks = SemanticChunker().chunk("林风说hello world")

        assert chunks[0].metadata.word_count == 5

    def test_dialogue_detection(self):
        content = "\"我们走吧。\"他说。\"好的。\"她答道。"

        assert SemanticChunker.detect_chunk_type(content) == "dialogue"

    def test_action_detection(self):
        content = "他拔出长剑冲上去，敌人倒下了。"

        assert SemanticChunker.detect_chunk_type(content) == "action"

    def test_description_is_default(self):
        content = "远处的山峰在晨光里显得格外安静。"

        assert SemanticChunker.detect_chunk_type(content) == "description"

    def test_metadata_defaults_without_extraction(self, sample_novel):
        """未开启提取时角色为空，重要性为默认值"""
        chunks = SemanticChunker(extract_metadata=False).chunk(sample_novel)

        assert chunks[0].metadata.characters == []
        assert chunks[0].metadata.importance == 5

    def test_extract_chinese_speaker(self):
        chunker = SemanticChunker(extract_metadata=True)

        assert chunker.extract_characters("\"你好。\"苏雪说道。") == ["苏雪"]

    def test_extract_english_speakers(self):
        chunker = SemanticChunker(extract_metadata=True)

        names = chunker.extract_characters("Alice said hello. \"Run,\" shouted Bob.")

        assert names == ["Alice", "Bob"]

    def test_known_characters_are_matched_literally(self):
        chunker = SemanticChunker(extract_metadata=True, known_characters=["林风", "赵无极"])

        chunks = chunker.chunk("林风独自走上山路。")

        assert "林风" in chunks[0].metadata.characters
        assert "赵无极" not in chunks[0].metadata.characters

    def test_scene_hint(self):
        assert SemanticChunker.extract_scene_hint("他走在山谷中，四周寂静。") == "山谷"

    def test_importance_counts_keywords(self):
        chunker = SemanticChunker(extract_metadata=True)

        chunks = chunker.chunk("这是一场关于背叛与真相的决战。")

        assert chunks[0].metadata.importance == 8

    def test_importance_is_capped_at_ten(self):
        chunker = SemanticChunker(extract_metadata=True)
        text = "冲突 战斗 死亡 爱 恨 秘密 真相 决战 转折 背叛"

        chunks = chunker.chunk(text)

        assert chunks[0].metadata.importance == 10


class TestChunkUtilities:
    """合并与定位"""

    def _chunk(self, index, content):
        return Chunk(id=f"chunk_{index}", content=content, metadata=ChunkMetadata(word_count=len(content)))

    def test_merge_small_chunks(self):
        """小于阈值的分块吸收后继，合并后重新编号并重建前序上下文"""
        # Arrange
        chunker = SemanticChunker()
        chunks = [self._chunk(0, "abcdefgh"), self._chunk(1, "xy"), self._chunk(2, "z")]

        # Act
        merged = chunker.merge_small_chunks(chunks, min_size=5)

        # Assert
        assert [c.content for c in merged] == ["abcdefgh", "xy\n\nz"]
        assert [c.id for c in merged] == ["chunk_0", "chunk_1"]
        assert merged[1].prev_context == "abcdefgh"
        assert merged[1].metadata.word_count == 3

    def test_merge_keeps_order_when_all_small(self):
        chunker = SemanticChunker()
        chunks = [self._chunk(i, c) for i, c in enumerate(["甲", "乙", "丙"])]

        merged = chunker.merge_small_chunks(chunks)

        assert len(merged) == 1
        assert merged[0].content == "甲\n\n乙\n\n丙"

    def test_merge_with_zero_context_chars(self):
        chunker = SemanticChunker(context_chars=0)
        chunks = [self._chunk(0, "abcdefgh"), self._chunk(1, "xyzuvw")]

        merged = chunker.merge_small_chunks(chunks, min_size=5)

        assert merged[1].prev_context == ""

    def test_get_chunk_at_position(self):
        chunks = [self._chunk(0, "abc"), self._chunk(1, "defg")]

        assert SemanticChunker.get_chunk_at_position(chunks, 4).id == "chunk_1"
        assert SemanticChunker.get_chunk_at_position(chunks, 0).id == "chunk_0"
        assert SemanticChunker.get_chunk_at_position(chunks, 99) is None


class TestFactory:

    def test_get_text_splitter_reads_chunker_section(self):
        config = {"chunker": {"max_tokens": 120, "extract_metadata": True, "context_chars": 50}}

        chunker = get_text_splitter(config)

        assert chunker.max_tokens == 120
        assert chunker.extract_metadata is True
        assert chunker.context_chars == 50

    def test_overrides_take_precedence(self):
        chunker = get_text_splitter({"chunker": {"max_tokens": 120}}, max_tokens=80)

        assert chunker.max_tokens == 80

    def test_negative_context_chars_is_rejected(self):
        with pytest.raises(ValueError):
            get_text_splitter({"chunker": {"context_chars": -1}})
