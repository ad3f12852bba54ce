"""Partition Archiver - Move whole partitions of range-partitioned PostgreSQL tables into archive tables."""

__version__ = "0.1.0"

__all__ = [
    "PartitionArchiver",
    "DatabaseManager",
    "PartitionLocator",
    "StructureValidator",
    "HealthValidator",
    "MetricsCollector",
    "TraceLogger",
    "TransactionManager",
]
