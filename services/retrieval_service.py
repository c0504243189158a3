"""
检索服务 (Retrieval Service)
从语义分块构建向量索引，在分数与 token 预算约束下检索相关上下文，并生成增强提示词。
"""
from __future__ import annotations
import logging
import time
from typing import List, Optional

from langchain_core.embeddings import Embeddings

from core.schemas import Chunk, DocumentMetadata, IndexedDocument, RAGContext, SearchResult
from core.tokens import estimate_tokens
from infra.llm.embeddings import HashingEmbeddings
from infra.storage.vector_store import VectorStore, cosine_similarity
from prompts.manager import get_prompt_template

logger = logging.getLogger(__name__)

def truncate_by_tokens(docs: List[IndexedDocument], max_tokens: int) -> List[IndexedDocument]:
    """按顺序累加 token，第一个超出预算的文档及其后所有文档都被丢弃"""
    result = []
    current_tokens = 0
    for doc in docs:
        tokens = estimate_tokens(doc.content)
        if current_tokens + tokens > max_tokens:
            break
        result.append(doc)
        current_tokens += tokens
    return result

def _total_tokens(docs: List[IndexedDocument]) -> int:
    return sum(estimate_tokens(doc.content) for doc in docs)

class RAGRetrieval:
    """
    检索增强生成的上下文检索器。

    注意：build_from_chunks 先清空再写入，不能与同一实例上的 retrieve 交错执行，调用方需自行串行化重建。
    """

    def __init__(self, embeddings: Optional[Embeddings] = None, source: str = "novel"):
        self.embeddings = embeddings or HashingEmbeddings()
        self.source = source
        self.vector_store = VectorStore()

    async def build_from_chunks(self, chunks: List[Chunk]):
        """从语义分块构建向量存储（覆盖而非追加）"""
        self.vector_store.clear()

        for i, chunk in enumerate(chunks):
            embedding = await self.embeddings.aembed_query(chunk.content)
            self.vector_store.add(IndexedDocument(
                id=chunk.id,
                content=chunk.content,
                metadata=DocumentMetadata(
                    source=self.source,
                    chunk_index=i,
                    character_mentions=list(chunk.metadata.characters),
                    scene_type=chunk.metadata.chunk_type,
                    importance=chunk.metadata.importance,
                ),
                embedding=embedding,
            ))

        logger.info(f"向量存储已重建，共 {len(chunks)} 个文档。")

    async def retrieve(self, query: str, top_k: int = 5, min_score: float = 0.7,
                       max_tokens: int = 2000) -> RAGContext:
        """
        检索相关上下文：相似度过滤 -> 降序排序 -> 截取 top_k -> 按 token 预算截断。
        """
        start_time = time.perf_counter()
        query_embedding = await self.embeddings.aembed_query(query)

        results: List[SearchResult] = []
        for doc in self.vector_store.get_all():
            if doc.embedding is None:
                continue
            score = cosine_similarity(query_embedding, doc.embedding)
            if score >= min_score:
                results.append(SearchResult(document=doc, score=score))

        results.sort(key=lambda r: r.score, reverse=True)
        relevant_chunks = truncate_by_tokens([r.document for r in results[:top_k]], max_tokens)

        search_time = int((time.perf_counter() - start_time) * 1000)
        logger.debug(f"检索 '{query[:30]}' 命中 {len(results)} 个文档，返回 {len(relevant_chunks)} 个。")
        return RAGContext(
            query=query,
            relevant_chunks=relevant_chunks,
            total_tokens=_total_tokens(relevant_chunks),
            search_time=search_time,
        )

    async def retrieve_for_character(self, character_name: str, top_k: int = 10,
                                     max_tokens: int = 3000, min_score: float = 0.7) -> RAGContext:
        """
        检索特定角色的相关上下文。
        优先取字面提及该角色的文档并按重要性排序，没有直接命中时退回普通检索。
        """
        query = f"{character_name}的性格特征 外貌描述 行为动机 情感变化"
        start_time = time.perf_counter()

        character_docs = [
            doc for doc in self.vector_store.get_all()
            if character_name in doc.metadata.character_mentions or character_name in doc.content
        ]
        if not character_docs:
            logger.debug(f"没有文档直接提及角色 '{character_name}'，退回语义检索。")
            return await self.retrieve(query, top_k=top_k, min_score=min_score, max_tokens=max_tokens)

        character_docs.sort(key=lambda d: d.metadata.importance or 0, reverse=True)
        relevant_chunks = truncate_by_tokens(character_docs[:top_k], max_tokens)

        return RAGContext(
            query=query,
            relevant_chunks=relevant_chunks,
            total_tokens=_total_tokens(relevant_chunks),
            search_time=int((time.perf_counter() - start_time) * 1000),
        )

    async def retrieve_for_scene(self, scene_description: str, top_k: int = 5,
                                 max_tokens: int = 2000, min_score: float = 0.7) -> RAGContext:
        """检索场景相关上下文"""
        query = f"场景描述: {scene_description} 环境 氛围 时间 地点"
        return await self.retrieve(query, top_k=top_k, min_score=min_score, max_tokens=max_tokens)

    def generate_augmented_prompt(self, base_prompt: str, context: RAGContext,
                                  max_context_length: int = 1500, include_metadata: bool = False) -> str:
        """
        将检索到的原文片段按字符预算拼接，包裹在"仅依据原文作答"的指令框架中，并附上原问题。
        """
        context_text = ""
        current_length = 0

        for doc in context.relevant_chunks:
            doc_text = f"[{doc.metadata.source}] {doc.content}" if include_metadata else doc.content
            if current_length + len(doc_text) > max_context_length:
                break
            context_text += f"\n---\n{doc_text}"
            current_length += len(doc_text)

        return get_prompt_template("augmented_prompt").format(
            context_text=context_text,
            base_prompt=base_prompt,
        )

    def get_stats(self) -> dict:
        """获取存储统计"""
        docs = self.vector_store.get_all()
        total_length = sum(len(doc.content) for doc in docs)
        return {
            "document_count": len(docs),
            "average_doc_length": total_length / len(docs) if docs else 0,
        }

    def clear(self):
        """清空存储"""
        self.vector_store.clear()
