"""
业务对象定义 (Schemas)
定义分块、检索、模型路由与人工审核各层之间传递的强类型数据结构，确保数据流透明且可预测。
"""
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any, Set

# --- 语义分块 ---

CHUNK_TYPES = ("description", "dialogue", "action")

@dataclass(frozen=True)
class ChunkBoundary:
    """分块内出现的结构性标记，position 为其在原文中的字符偏移"""
    type: str
    position: int
    confidence: int = 100

@dataclass(frozen=True)
class ChunkMetadata:
    characters: List[str] = field(default_factory=list)
    scene_hint: str = ""
    importance: int = 5
    word_count: int = 0
    chunk_type: str = "description"

@dataclass(frozen=True)
class Chunk:
    """
    语义分块 (Chunk)
    由分块器一次性产出，之后不再修改。除第一个分块外，prev_context 均非空。
    """
    id: str
    content: str
    prev_context: str = ""
    boundaries: List[ChunkBoundary] = field(default_factory=list)
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)

    def to_dict(self):
        return asdict(self)

# --- 检索 ---

@dataclass
class DocumentMetadata:
    source: str = "novel"
    chunk_index: Optional[int] = None
    character_mentions: List[str] = field(default_factory=list)
    scene_type: Optional[str] = None
    importance: Optional[int] = None

@dataclass
class IndexedDocument:
    id: str
    content: str
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)
    embedding: Optional[List[float]] = None

@dataclass
class SearchResult:
    document: IndexedDocument
    score: float

@dataclass
class RAGContext:
    """检索结果。search_time 单位为毫秒。"""
    query: str
    relevant_chunks: List[IndexedDocument] = field(default_factory=list)
    total_tokens: int = 0
    search_time: int = 0

# --- 模型路由 ---

@dataclass
class TaskRequirement:
    required_capabilities: List[str] = field(default_factory=list)
    preferred_capabilities: List[str] = field(default_factory=list)
    min_context_window: int = 0
    description: str = ""

@dataclass
class ModelRuntimeEntry:
    """已注册模型的运行时信息。capabilities 每次注册时重新推断。"""
    id: str
    name: str
    provider: str
    max_tokens: int
    context_window: int
    cost_per_1k_input: float
    cost_per_1k_output: float
    capabilities: Set[str] = field(default_factory=set)
    rate_limit: int = 10
    raw_config: Dict[str, Any] = field(default_factory=dict)

    @property
    def average_cost(self) -> float:
        return (self.cost_per_1k_input + self.cost_per_1k_output) / 2

@dataclass
class RoutingAlternative:
    model: str
    estimated_cost: float
    reason: str

@dataclass
class RoutingDecision:
    model: str
    estimated_cost: float
    estimated_time: int
    reason: str
    alternatives: List[RoutingAlternative] = field(default_factory=list)

@dataclass
class TextGenerationResult:
    """文本生成服务的返回结构"""
    success: bool
    data: Optional[str] = None
    error: Optional[str] = None

@dataclass
class RouteResult:
    """
    一次路由调用的执行结果。
    批量执行中失败的条目以 content 为空、cost 为 0 的占位结果返回，并在 error 中记录原因。
    """
    content: str
    model_used: str
    tokens_used: Dict[str, int] = field(default_factory=lambda: {"input": 0, "output": 0})
    cost: float = 0.0
    latency: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

# --- 人工审核 ---

STAGE_STORY_BIBLE = "story_bible"
STAGE_CHARACTER_DESIGN = "character_design"
STAGE_SCENE_OUTLINE = "scene_outline"
STAGE_SHOT_LIST = "shot_list"
REVIEW_STAGES = (STAGE_STORY_BIBLE, STAGE_CHARACTER_DESIGN, STAGE_SCENE_OUTLINE, STAGE_SHOT_LIST)

STATUS_PENDING = "pending"
STATUS_AWAITING_REVIEW = "awaiting_review"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_MODIFIED = "modified"
STATUS_ACCEPTED = "accepted" # 无需审核直接接受

@dataclass
class Checkpoint:
    id: str
    stage: str
    status: str
    data: Any
    submitted_at: int
    reviewed_at: Optional[int] = None
    reviewer_notes: Optional[str] = None
    modifications: Optional[Dict[str, Any]] = None

@dataclass
class StoryBible:
    """故事圣经：全局唯一的可锁定规范数据"""
    locked: bool = False
    characters: List[Any] = field(default_factory=list)
    scenes: List[Any] = field(default_factory=list)
    visual_style: str = ""
    tone: str = ""
    target_audience: str = ""
    locked_at: Optional[int] = None

    @classmethod
    def from_data(cls, data: Any) -> "StoryBible":
        """从审核数据（字典或 StoryBible）构造，忽略未知字段"""
        if isinstance(data, StoryBible):
            return StoryBible(**asdict(data))
        data = data or {}
        return cls(
            locked=bool(data.get("locked", False)),
            characters=list(data.get("characters") or []),
            scenes=list(data.get("scenes") or []),
            visual_style=data.get("visual_style", "") or "",
            tone=data.get("tone", "") or "",
            target_audience=data.get("target_audience", "") or "",
            locked_at=data.get("locked_at"),
        )

    def to_dict(self):
        return asdict(self)

@dataclass
class ReviewGateConfig:
    enabled: bool = True
    auto_lock_after_approval: bool = True
    lock_timeout: int = 24 * 60 * 60 * 1000 # 毫秒
    required_stages: List[str] = field(default_factory=lambda: [STAGE_STORY_BIBLE, STAGE_CHARACTER_DESIGN])

@dataclass
class ReviewReport:
    total_checkpoints: int = 0
    pending_count: int = 0
    approved_count: int = 0
    rejected_count: int = 0
    modified_count: int = 0
    average_review_time: float = 0.0

@dataclass
class BatchReviewResult:
    reviewed: List[Checkpoint] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

# --- 流水线 ---

@dataclass
class StageOutcome:
    """单个阶段的执行记录"""
    stage: str
    data: Any
    checkpoint: Optional[Checkpoint] = None
    route_results: List[RouteResult] = field(default_factory=list)
    resumed: bool = False # 从已保存的产出恢复，本次未调用模型

    @property
    def cost(self) -> float:
        return sum(r.cost for r in self.route_results)

@dataclass
class PipelineRun:
    """一次完整流水线运行的结果"""
    stages: Dict[str, StageOutcome] = field(default_factory=dict)
    halted_stage: Optional[str] = None
    cost_breakdown: Dict[str, float] = field(default_factory=dict)

    @property
    def total_cost(self) -> float:
        return sum(self.cost_breakdown.values())
