"""
Configuration management
"""
import os
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


# ============================================
# CONFIGURATION DEFAULTS
# ============================================

class ConfigDefaults:
    """Default configuration values as constants"""

    # Source-of-truth defaults
    SOURCE_DATABASE_URL_DEFAULT = "sqlite:///./data/source.db"
    SOURCE_POLL_INTERVAL_MS = 200
    SOURCE_READ_LIMIT = 500

    # Event log defaults
    EVENT_LOG_BACKEND_MEMORY = "memory"
    EVENT_LOG_BACKEND_KAFKA = "kafka"
    EVENT_LOG_BOOTSTRAP_DEFAULT = "localhost:9092"
    EVENT_LOG_PARTITIONS_DEFAULT = 8
    EVENT_LOG_CONSUMER_GROUP_DEFAULT = "datafabric"
    TOPIC_CHANGES_DEFAULT = "fabric.changes"
    TOPIC_ENRICHED_PREFIX_DEFAULT = "fabric.enriched"
    TOPIC_DEAD_LETTER_DEFAULT = "fabric.dead-letter"
    FETCH_TIMEOUT_MS_DEFAULT = 500

    # Sink defaults
    VECTOR_BACKEND_MEMORY = "memory"
    VECTOR_BACKEND_SQL = "sql"
    VECTOR_DIMENSION_DEFAULT = 256
    GRAPH_BACKEND_NETWORKX = "networkx"
    GRAPH_BACKEND_NEO4J = "neo4j"
    NEO4J_URI_DEFAULT = "bolt://localhost:7687"
    NEO4J_USER_DEFAULT = "neo4j"
    EMBEDDING_PROVIDER_HASHING = "hashing"
    EMBEDDING_PROVIDER_SENTENCE_TRANSFORMERS = "sentence-transformers"
    EMBEDDING_MODEL_DEFAULT = "all-MiniLM-L6-v2"
    ARTIFACT_CACHE_SIZE_DEFAULT = 10000
    ARTIFACT_CACHE_TTL_SECONDS_DEFAULT = 3600

    # Batching defaults
    MAX_BATCH_SIZE_DEFAULT = 200
    MAX_BATCH_DELAY_MS_DEFAULT = 250

    # Retry defaults (transient store errors)
    RETRY_MAX_ATTEMPTS_DEFAULT = 5
    RETRY_MIN_WAIT_DEFAULT = 0.1  # seconds
    RETRY_MAX_WAIT_DEFAULT = 5.0  # seconds
    RETRY_MULTIPLIER_DEFAULT = 2

    # Backpressure defaults
    BACKPRESSURE_LATENCY_THRESHOLD_MS = 500
    BACKPRESSURE_MIN_FETCH_SIZE = 10
    BACKPRESSURE_MAX_POLL_DELAY_MS = 2000
    BACKPRESSURE_EWMA_ALPHA = 0.3

    # Federation defaults
    RRF_K_DEFAULT = 60
    FEDERATION_DEADLINE_MS_DEFAULT = 2000
    FEDERATION_TOP_K_DEFAULT = 10
    FEDERATION_HOP_LIMIT_DEFAULT = 2
    FEDERATION_BREAKER_FAIL_MAX = 5
    FEDERATION_BREAKER_RESET_SECONDS = 30

    # Reconciliation defaults
    RECONCILIATION_INTERVAL_SECONDS_DEFAULT = 300
    RECONCILIATION_PARTITIONS_DEFAULT = 8

    # Logging defaults
    LOGGING_LEVEL_INFO = "INFO"
    LOGGING_FORMAT_CONSOLE = "console"
    LOGGING_FORMAT_JSON = "json"

    # Server defaults
    SERVER_HOST_DEFAULT = "0.0.0.0"
    SERVER_PORT_DEFAULT = 8000

    # Config file defaults
    CONFIG_PATH_DEFAULT = "config/config.yaml"


# ============================================
# CONFIGURATION MODELS
# ============================================

class SourceConfig(BaseModel):
    """Source-of-truth connection and capture settings"""
    database_url: str = ConfigDefaults.SOURCE_DATABASE_URL_DEFAULT
    checkpoint_name: str = "default"
    poll_interval_ms: int = ConfigDefaults.SOURCE_POLL_INTERVAL_MS
    read_limit: int = ConfigDefaults.SOURCE_READ_LIMIT


class TopicsConfig(BaseModel):
    """Event log topic names"""
    changes: str = ConfigDefaults.TOPIC_CHANGES_DEFAULT
    enriched_prefix: str = ConfigDefaults.TOPIC_ENRICHED_PREFIX_DEFAULT
    dead_letter: str = ConfigDefaults.TOPIC_DEAD_LETTER_DEFAULT

    def enriched(self, sink: str) -> str:
        """Topic carrying enriched events for one sink"""
        return f"{self.enriched_prefix}.{sink}"


class EventLogConfig(BaseModel):
    """Change Event Log client configuration"""
    backend: str = ConfigDefaults.EVENT_LOG_BACKEND_MEMORY  # "memory" or "kafka"
    bootstrap_servers: str = ConfigDefaults.EVENT_LOG_BOOTSTRAP_DEFAULT
    partitions: int = ConfigDefaults.EVENT_LOG_PARTITIONS_DEFAULT
    consumer_group: str = ConfigDefaults.EVENT_LOG_CONSUMER_GROUP_DEFAULT
    fetch_timeout_ms: int = ConfigDefaults.FETCH_TIMEOUT_MS_DEFAULT
    topics: TopicsConfig = TopicsConfig()


class ForeignKeyConfig(BaseModel):
    """A foreign key column that becomes a graph edge"""
    column: str
    target_table: str
    rel_type: str


class GraphMappingConfig(BaseModel):
    """How rows of one table map onto the graph"""
    label: Optional[str] = None  # node label; defaults to the table name
    foreign_keys: List[ForeignKeyConfig] = []
    # Join tables: the row itself is an edge between two referenced rows
    edge_from: Optional[ForeignKeyConfig] = None
    edge_to: Optional[ForeignKeyConfig] = None
    edge_type: Optional[str] = None


class TableConfig(BaseModel):
    """Per-table mapping metadata supplied by the schema collaborator"""
    name: str
    key_columns: List[str]
    text_columns: List[str] = []
    metadata_columns: Optional[List[str]] = None  # None means all columns
    sinks: List[str] = ["vector", "graph", "keyword"]
    graph: GraphMappingConfig = GraphMappingConfig()


class VectorSinkConfig(BaseModel):
    """Vector sink configuration"""
    enabled: bool = True
    backend: str = ConfigDefaults.VECTOR_BACKEND_MEMORY  # "memory" or "sql"
    database_url: Optional[str] = None
    dimension: int = ConfigDefaults.VECTOR_DIMENSION_DEFAULT
    embedding_provider: str = ConfigDefaults.EMBEDDING_PROVIDER_HASHING
    embedding_model: str = ConfigDefaults.EMBEDDING_MODEL_DEFAULT


class GraphSinkConfig(BaseModel):
    """Graph sink configuration"""
    enabled: bool = True
    backend: str = ConfigDefaults.GRAPH_BACKEND_NETWORKX  # "networkx" or "neo4j"
    neo4j_uri: str = ConfigDefaults.NEO4J_URI_DEFAULT
    neo4j_user: str = ConfigDefaults.NEO4J_USER_DEFAULT
    neo4j_password: Optional[str] = None


class KeywordSinkConfig(BaseModel):
    """Keyword sink configuration"""
    enabled: bool = True


class SinksConfig(BaseModel):
    """All downstream projections"""
    vector: VectorSinkConfig = VectorSinkConfig()
    graph: GraphSinkConfig = GraphSinkConfig()
    keyword: KeywordSinkConfig = KeywordSinkConfig()
    artifact_cache_size: int = ConfigDefaults.ARTIFACT_CACHE_SIZE_DEFAULT
    artifact_cache_ttl_seconds: int = ConfigDefaults.ARTIFACT_CACHE_TTL_SECONDS_DEFAULT

    def enabled_sinks(self) -> List[str]:
        names = []
        if self.vector.enabled:
            names.append("vector")
        if self.graph.enabled:
            names.append("graph")
        if self.keyword.enabled:
            names.append("keyword")
        return names


class BatchingConfig(BaseModel):
    """Sink writer batching"""
    max_batch_size: int = Field(ConfigDefaults.MAX_BATCH_SIZE_DEFAULT, ge=1)
    max_batch_delay_ms: int = Field(ConfigDefaults.MAX_BATCH_DELAY_MS_DEFAULT, ge=0)


class RetrySettings(BaseModel):
    """Bounded exponential backoff for transient errors"""
    max_attempts: int = Field(ConfigDefaults.RETRY_MAX_ATTEMPTS_DEFAULT, ge=1)
    min_wait: float = ConfigDefaults.RETRY_MIN_WAIT_DEFAULT
    max_wait: float = ConfigDefaults.RETRY_MAX_WAIT_DEFAULT
    multiplier: float = ConfigDefaults.RETRY_MULTIPLIER_DEFAULT


class BackpressureConfig(BaseModel):
    """Writer throttling when store latency rises"""
    latency_threshold_ms: float = ConfigDefaults.BACKPRESSURE_LATENCY_THRESHOLD_MS
    min_fetch_size: int = ConfigDefaults.BACKPRESSURE_MIN_FETCH_SIZE
    max_poll_delay_ms: float = ConfigDefaults.BACKPRESSURE_MAX_POLL_DELAY_MS
    ewma_alpha: float = ConfigDefaults.BACKPRESSURE_EWMA_ALPHA


class FederationConfig(BaseModel):
    """Query federation settings"""
    rrf_k: int = Field(ConfigDefaults.RRF_K_DEFAULT, ge=1)
    default_deadline_ms: int = ConfigDefaults.FEDERATION_DEADLINE_MS_DEFAULT
    default_top_k: int = ConfigDefaults.FEDERATION_TOP_K_DEFAULT
    hop_limit: int = ConfigDefaults.FEDERATION_HOP_LIMIT_DEFAULT
    breaker_fail_max: int = ConfigDefaults.FEDERATION_BREAKER_FAIL_MAX
    breaker_reset_seconds: int = ConfigDefaults.FEDERATION_BREAKER_RESET_SECONDS


class ReconciliationConfig(BaseModel):
    """Reconciliation monitor schedule"""
    enabled: bool = True
    interval_seconds: float = ConfigDefaults.RECONCILIATION_INTERVAL_SECONDS_DEFAULT
    partitions: int = ConfigDefaults.RECONCILIATION_PARTITIONS_DEFAULT
    auto_repair: bool = True


class DeadLetterConfig(BaseModel):
    """Dead-letter destination"""
    persist_to_database: bool = False
    database_url: Optional[str] = None


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = ConfigDefaults.LOGGING_LEVEL_INFO
    file: Optional[str] = None
    format: str = ConfigDefaults.LOGGING_FORMAT_CONSOLE


class ServerConfig(BaseModel):
    """Server configuration"""
    host: str = ConfigDefaults.SERVER_HOST_DEFAULT
    port: int = ConfigDefaults.SERVER_PORT_DEFAULT


class Config(BaseModel):
    """Main configuration"""
    source: SourceConfig = SourceConfig()
    event_log: EventLogConfig = EventLogConfig()
    tables: List[TableConfig] = []
    sinks: SinksConfig = SinksConfig()
    batching: BatchingConfig = BatchingConfig()
    retry: RetrySettings = RetrySettings()
    backpressure: BackpressureConfig = BackpressureConfig()
    federation: FederationConfig = FederationConfig()
    reconciliation: ReconciliationConfig = ReconciliationConfig()
    dead_letter: DeadLetterConfig = DeadLetterConfig()
    logging: LoggingConfig = LoggingConfig()
    server: ServerConfig = ServerConfig()

    def table(self, name: str) -> Optional[TableConfig]:
        for table in self.tables:
            if table.name == name:
                return table
        return None

    @classmethod
    def default(cls, tables: Optional[List[TableConfig]] = None) -> "Config":
        """In-memory configuration used for local runs and tests"""
        return cls(tables=tables or [])


def load_config(config_path: str = ConfigDefaults.CONFIG_PATH_DEFAULT) -> Config:
    """
    Load configuration from YAML file and environment variables.
    """
    load_dotenv()

    with open(config_path, 'r') as f:
        config_dict = yaml.safe_load(f) or {}

    config_dict = _replace_env_vars(config_dict)

    return Config(**config_dict)


def _replace_env_vars(obj: Any) -> Any:
    """
    Recursively replace ${VAR} placeholders with environment variables.
    """
    if isinstance(obj, dict):
        return {k: _replace_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_replace_env_vars(item) for item in obj]
    elif isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        var_name = obj[2:-1]
        default = None
        if ":-" in var_name:
            var_name, default = var_name.split(":-", 1)
        env_value = os.getenv(var_name)
        if env_value:
            return env_value
        if default is not None:
            return default
        return obj
    return obj


def get_database_url(config: Optional[Config] = None) -> str:
    """Get the source database URL from environment or config"""
    env_url = os.getenv("DATAFABRIC_SOURCE_URL")
    if env_url:
        return env_url
    if config:
        return config.source.database_url
    return ConfigDefaults.SOURCE_DATABASE_URL_DEFAULT


def config_summary(config: Config) -> Dict[str, Any]:
    """Non-secret view of the effective configuration"""
    return {
        "event_log": config.event_log.backend,
        "partitions": config.event_log.partitions,
        "sinks": config.sinks.enabled_sinks(),
        "tables": [t.name for t in config.tables],
        "rrf_k": config.federation.rrf_k,
        "reconciliation_interval_seconds": config.reconciliation.interval_seconds,
    }
