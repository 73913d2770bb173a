from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, JSON, Float
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

Base = declarative_base()


class TableDefinition(Base):
    """Managed table schema"""
    __tablename__ = "table_definitions"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    columns = Column(JSON, nullable=False, default=list)  # [{id: "col_xxx", name, type, required, default, options, computed}]
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    rows = relationship("TableRow", back_populates="table", cascade="all, delete-orphan", passive_deletes=True)


class TableRow(Base):
    """Row of data in a managed table"""
    __tablename__ = "table_rows"

    id = Column(Integer, primary_key=True, index=True)
    table_id = Column(Integer, ForeignKey("table_definitions.id", ondelete="CASCADE"), nullable=False, index=True)
    data = Column(JSON, nullable=False, default=dict)  # {column_id: value, ...}
    errors = Column(JSON, nullable=False, default=dict)  # {column_id: {type, message}} for failed computed cells
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    table = relationship("TableDefinition", back_populates="rows")


class AgentDefinition(Base):
    """Conversational agent backed by two managed tables (memory and tool log)"""
    __tablename__ = "agent_definitions"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, unique=True, index=True)
    system_prompt = Column(Text, nullable=False)
    model = Column(String(100), nullable=False)
    max_tokens = Column(Integer, nullable=False)
    temperature = Column(Float, nullable=False)
    n_latest_messages = Column(Integer, nullable=False)
    max_iterations = Column(Integer, nullable=False)
    tool_names = Column(JSON, nullable=False, default=list)
    memory_table_id = Column(Integer, ForeignKey("table_definitions.id"), nullable=False)
    tool_log_table_id = Column(Integer, ForeignKey("table_definitions.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
