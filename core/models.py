"""
核心数据模型 (Data Models)
定义存储在 SQLite (content.db) 中的表结构。
"""
from sqlalchemy import BigInteger, Boolean, Column, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class StageOutput(Base):
    """
    阶段产出表
    每个通过审核的阶段产出一行，data 为 JSON 文本。
    """
    __tablename__ = 'stage_outputs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    stage = Column(String, nullable=False, index=True)
    checkpoint_id = Column(String, nullable=True)
    status = Column(String, nullable=False) # approved / modified / accepted
    source_hash = Column(String, nullable=True, index=True) # 原文内容哈希，断点续跑时用于匹配
    data = Column(Text, nullable=True)
    cost = Column(Float, default=0.0) # 该阶段的模型调用成本 (美元)
    created_at = Column(BigInteger, nullable=False) # 毫秒时间戳

class StoryBibleState(Base):
    """
    故事圣经状态表 (单行)
    """
    __tablename__ = 'story_bible_state'

    key = Column(String, primary_key=True, default="current")
    data = Column(Text, nullable=True)
    locked = Column(Boolean, default=False)
    locked_at = Column(BigInteger, nullable=True)
