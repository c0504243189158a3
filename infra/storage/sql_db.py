"""
SQLite 数据库管理器 (SQL Store)
负责管理单项目目录下的 content.db，保存通过审核的阶段产出与故事圣经状态。
"""
import os
import logging
import json
from functools import lru_cache
from typing import Any, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from core.models import Base, StageOutput, StoryBibleState
from core.schemas import StoryBible
from core.tokens import now_ms

logger = logging.getLogger(__name__)

STORY_BIBLE_KEY = "current"

@lru_cache(maxsize=5)
def get_engine(project_root: str):
    """
    获取指定项目的数据库引擎 (带缓存)。
    """
    os.makedirs(project_root, exist_ok=True)
    db_path = os.path.join(project_root, "content.db")
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})

    # 自动建表
    Base.metadata.create_all(engine)
    return engine

def get_session(project_root: str) -> Session:
    """获取一个新的数据库会话"""
    engine = get_engine(project_root)
    SessionLocal = sessionmaker(bind=engine)
    return SessionLocal()

# --- 具体的 CRUD 操作 ---

def save_stage_output(project_root: str, stage: str, data: Any, status: str,
                      checkpoint_id: str = None, cost: float = 0.0, source_hash: str = None) -> bool:
    """追加一条阶段产出记录"""
    session = get_session(project_root)
    try:
        session.add(StageOutput(
            stage=stage,
            checkpoint_id=checkpoint_id,
            status=status,
            source_hash=source_hash,
            data=json.dumps(data, ensure_ascii=False),
            cost=cost,
            created_at=now_ms(),
        ))
        session.commit()
        return True
    except Exception as e:
        session.rollback()
        logger.error(f"保存阶段产出失败 {stage}: {e}", exc_info=True)
        return False
    finally:
        session.close()

def get_stage_outputs(project_root: str, stage: str = None, source_hash: str = None) -> List[dict]:
    """按写入顺序读取阶段产出，可按阶段与原文哈希过滤"""
    session = get_session(project_root)
    try:
        query = session.query(StageOutput)
        if stage:
            query = query.filter_by(stage=stage)
        if source_hash:
            query = query.filter_by(source_hash=source_hash)
        return [
            {
                "stage": o.stage,
                "checkpoint_id": o.checkpoint_id,
                "status": o.status,
                "source_hash": o.source_hash,
                "data": json.loads(o.data) if o.data else None,
                "cost": o.cost,
                "created_at": o.created_at,
            } for o in query.order_by(StageOutput.id).all()
        ]
    finally:
        session.close()

def get_latest_stage_output(project_root: str, stage: str, source_hash: str = None) -> Optional[dict]:
    outputs = get_stage_outputs(project_root, stage, source_hash)
    return outputs[-1] if outputs else None

def save_story_bible(project_root: str, bible: StoryBible) -> bool:
    """保存或更新故事圣经"""
    session = get_session(project_root)
    try:
        payload = bible.to_dict()
        state = session.query(StoryBibleState).filter_by(key=STORY_BIBLE_KEY).first()
        if state:
            state.data = json.dumps(payload, ensure_ascii=False)
            state.locked = bible.locked
            state.locked_at = bible.locked_at
        else:
            session.add(StoryBibleState(
                key=STORY_BIBLE_KEY,
                data=json.dumps(payload, ensure_ascii=False),
                locked=bible.locked,
                locked_at=bible.locked_at,
            ))
        session.commit()
        return True
    except Exception as e:
        session.rollback()
        logger.error(f"保存故事圣经失败: {e}", exc_info=True)
        return False
    finally:
        session.close()

def load_story_bible(project_root: str) -> Optional[StoryBible]:
    """读取故事圣经，不存在时返回 None"""
    session = get_session(project_root)
    try:
        state = session.query(StoryBibleState).filter_by(key=STORY_BIBLE_KEY).first()
        if not state or not state.data:
            return None
        bible = StoryBible.from_data(json.loads(state.data))
        bible.locked = bool(state.locked)
        bible.locked_at = state.locked_at
        return bible
    finally:
        session.close()

class SQLStore:
    """绑定到单个项目目录的持久化入口，供流水线在阶段通过审核后调用"""

    def __init__(self, project_root: str):
        self.project_root = project_root

    @classmethod
    def from_config(cls, full_config: dict) -> Optional["SQLStore"]:
        """根据 'persistence' 段创建，未启用时返回 None"""
        section = full_config.get("persistence") or {}
        if not section.get("enabled", False):
            return None
        return cls(section.get("project_root", "data/projects/default"))

    def save_stage_output(self, stage: str, data: Any, status: str,
                          checkpoint_id: str = None, cost: float = 0.0, source_hash: str = None) -> bool:
        return save_stage_output(self.project_root, stage, data, status, checkpoint_id, cost, source_hash)

    def get_stage_outputs(self, stage: str = None, source_hash: str = None) -> List[dict]:
        return get_stage_outputs(self.project_root, stage, source_hash)

    def get_latest_stage_output(self, stage: str, source_hash: str = None) -> Optional[dict]:
        return get_latest_stage_output(self.project_root, stage, source_hash)

    def save_story_bible(self, bible: StoryBible) -> bool:
        return save_story_bible(self.project_root, bible)

    def load_story_bible(self) -> Optional[StoryBible]:
        return load_story_bible(self.project_root)
