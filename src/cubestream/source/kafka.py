from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaError
from aiokafka.structs import TopicPartition

from cubestream.config import Config
from cubestream.errors import ConfigurationError, TransientSourceError
from cubestream.logger import log
from cubestream.source import RawMessage, SourceConfig


class KafkaSourceClient:
    def __init__(
        self,
        source: SourceConfig,
        config: Config,
        consumer_factory: Callable[..., AIOKafkaConsumer] = AIOKafkaConsumer,
    ):
        self.source = source
        self.config = config
        self.consumer_factory = consumer_factory
        self.timeout_ms = source.timeout_ms or config.SOURCE_READ_TIMEOUT_MS
        self._metadata_consumer: AIOKafkaConsumer | None = None

    def _consumer_config(self) -> dict:
        return {
            "bootstrap_servers": self.source.bootstrap_servers,
            "group_id": None,
            "enable_auto_commit": False,
            "auto_offset_reset": "earliest",
            "request_timeout_ms": max(self.timeout_ms, 1000),
        }

    async def _metadata(self) -> AIOKafkaConsumer:
        if self._metadata_consumer is None:
            consumer = self.consumer_factory(**self._consumer_config())
            try:
                await consumer.start()
            except KafkaError as e:
                raise TransientSourceError(f"cannot connect to {self.source.bootstrap_servers}: {e}") from e
            self._metadata_consumer = consumer
        return self._metadata_consumer

    def _tp(self, partition: int) -> TopicPartition:
        return TopicPartition(self.source.topic, partition)

    async def list_partitions(self) -> set[int]:
        consumer = await self._metadata()
        try:
            # refreshes cluster metadata for every topic
            await consumer.topics()
        except KafkaError as e:
            raise TransientSourceError(f"metadata request failed: {e}") from e
        partitions = consumer.partitions_for_topic(self.source.topic)
        if not partitions:
            raise ConfigurationError(f"topic {self.source.topic} not found or has no partitions")
        return set(partitions)

    async def low_watermark(self, partition: int) -> int:
        consumer = await self._metadata()
        tp = self._tp(partition)
        try:
            offsets = await consumer.beginning_offsets([tp])
        except (KafkaError, asyncio.TimeoutError) as e:
            raise TransientSourceError(f"beginning offset lookup failed for {tp}: {e}") from e
        return int(offsets[tp])

    async def high_watermark(self, partition: int) -> int:
        consumer = await self._metadata()
        tp = self._tp(partition)
        try:
            offsets = await consumer.end_offsets([tp])
        except (KafkaError, asyncio.TimeoutError) as e:
            raise TransientSourceError(f"end offset lookup failed for {tp}: {e}") from e
        return int(offsets[tp])

    async def read(self, partition: int, start_offset: int, end_offset: int) -> AsyncIterator[RawMessage]:
        if start_offset >= end_offset:
            return
        tp = self._tp(partition)
        consumer = self.consumer_factory(**self._consumer_config())
        loop = asyncio.get_running_loop()
        try:
            await consumer.start()
            consumer.assign([tp])
            consumer.seek(tp, start_offset)
            last_progress = loop.time()
            while True:
                batch = await consumer.getmany(
                    tp,
                    timeout_ms=min(self.timeout_ms, 1000),
                    max_records=self.config.SOURCE_FETCH_MAX_RECORDS,
                )
                records = batch.get(tp, [])
                if records:
                    last_progress = loop.time()
                for record in records:
                    if record.offset < start_offset:
                        continue
                    if record.offset >= end_offset:
                        return
                    yield RawMessage(
                        partition=partition,
                        offset=record.offset,
                        payload=record.value or b"",
                        timestamp_ms=record.timestamp,
                    )
                # compacted topics and transaction markers leave offset gaps
                if await consumer.position(tp) >= end_offset:
                    return
                if not records and (loop.time() - last_progress) * 1000 > self.timeout_ms:
                    raise TransientSourceError(
                        f"timed out reading {tp} before reaching offset {end_offset}"
                    )
        except KafkaError as e:
            raise TransientSourceError(f"read failed for {tp}: {e}") from e
        finally:
            await consumer.stop()

    async def close(self) -> None:
        if self._metadata_consumer is not None:
            consumer, self._metadata_consumer = self._metadata_consumer, None
            await consumer.stop()
            log.debug("kafka metadata consumer stopped", topic=self.source.topic)


def kafka_source_client_factory(config: Config):
    def _factory(source: SourceConfig) -> KafkaSourceClient:
        return KafkaSourceClient(source, config)

    return _factory
