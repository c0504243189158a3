"""
Vector Store
进程内的向量存储：以文档 ID 为键保存 IndexedDocument，并提供余弦相似度计算。
每个检索服务实例独占一个存储，互不共享。
"""
import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from core.exceptions import DimensionMismatchError
from core.schemas import IndexedDocument

logger = logging.getLogger(__name__)

class VectorStore:
    """简单的内存向量存储，保持插入顺序"""

    def __init__(self):
        self._documents: Dict[str, IndexedDocument] = {}

    def add(self, document: IndexedDocument):
        self._documents[document.id] = document

    def get(self, document_id: str) -> Optional[IndexedDocument]:
        return self._documents.get(document_id)

    def get_all(self) -> List[IndexedDocument]:
        return list(self._documents.values())

    def clear(self):
        self._documents.clear()

    def size(self) -> int:
        return len(self._documents)

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    计算两个向量的余弦相似度。
    维度不一致时抛出 DimensionMismatchError；任一向量为零向量时返回 0。
    """
    if len(a) != len(b):
        raise DimensionMismatchError(f"Vectors must have same dimension: {len(a)} != {len(b)}")

    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))
