from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


class StreamingSource(Base, TimestampMixin):
    __tablename__ = "streaming_sources"

    # table identity as the cube model knows it, e.g. DEFAULT.ORDERS
    identity: Mapped[str] = mapped_column(String, primary_key=True)
    topic: Mapped[str] = mapped_column(String, nullable=False)
    bootstrap_servers: Mapped[str] = mapped_column(String, nullable=False)
    parser_name: Mapped[str] = mapped_column(String, nullable=False, default="json")
    parser_properties: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # [{"name": ..., "datatype": ...}, ...] in flat table order
    columns: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    timeout_ms: Mapped[Optional[int]] = mapped_column(Integer)


class Segment(Base, TimestampMixin):
    __tablename__ = "segments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    cube_name: Mapped[str] = mapped_column(String, nullable=False)
    source_identity: Mapped[str] = mapped_column(
        ForeignKey("streaming_sources.identity"), nullable=False
    )
    name: Mapped[Optional[str]] = mapped_column(String)

    status: Mapped[str] = mapped_column(String, nullable=False, default="NEW")
    build_state: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")
    failed_state: Mapped[Optional[str]] = mapped_column(String)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    last_job_id: Mapped[Optional[str]] = mapped_column(String)

    # [start, end) in epoch millis
    time_range_start: Mapped[Optional[int]] = mapped_column(BigInteger)
    time_range_end: Mapped[Optional[int]] = mapped_column(BigInteger)

    input_records: Mapped[Optional[int]] = mapped_column(BigInteger)
    rejected_records: Mapped[Optional[int]] = mapped_column(BigInteger)
    input_bytes: Mapped[Optional[int]] = mapped_column(BigInteger)
    materialized_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True))

    partition_offsets: Mapped[list["SegmentPartitionOffset"]] = relationship(
        back_populates="segment",
        cascade="all, delete-orphan",
        order_by="SegmentPartitionOffset.partition_number",
    )

    __table_args__ = (
        Index("ix_segments_cube_status", "cube_name", "status"),
        CheckConstraint(
            "status IN ('NEW', 'READY', 'MERGED', 'DISCARDED')",
            name="ck_segments_status_valid",
        ),
    )


class SegmentPartitionOffset(Base):
    __tablename__ = "segment_partition_offsets"

    segment_id: Mapped[str] = mapped_column(
        ForeignKey("segments.id", ondelete="CASCADE"), primary_key=True
    )
    partition_number: Mapped[int] = mapped_column(Integer, primary_key=True)
    start_offset: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_offset: Mapped[int] = mapped_column(BigInteger, nullable=False)

    segment: Mapped["Segment"] = relationship(back_populates="partition_offsets")

    __table_args__ = (
        CheckConstraint("start_offset <= end_offset", name="ck_segment_offsets_ordered"),
    )


class SegmentMergeSource(Base):
    __tablename__ = "segment_merge_sources"

    merged_segment_id: Mapped[str] = mapped_column(
        ForeignKey("segments.id", ondelete="CASCADE"), primary_key=True
    )
    source_segment_id: Mapped[str] = mapped_column(
        ForeignKey("segments.id", ondelete="CASCADE"), primary_key=True
    )
