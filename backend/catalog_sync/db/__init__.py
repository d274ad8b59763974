# 导出入口，给脚本/临时建表用

from .session import SessionLocal, init_engine, session_scope
from catalog_sync.db.model import *  # 确保把所有模型加载进 Base.metadata
from .base import Base


"""
    开发期/测试在空库快速建表；表结构迁移由元数据库一侧负责。
"""
def create_all(engine=None) -> None:
    Base.metadata.create_all(bind=engine or init_engine())
