from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class ETLState(str, enum.Enum):
    """Lifecycle state of an ETL file or run"""
    UPLOADED = "uploaded"
    PARSING = "parsing"
    PARSED = "parsed"
    VALIDATING = "validating"
    VALIDATED = "validated"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LogLevel(str, enum.Enum):
    """Audit log severity"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class RecordTable(str, enum.Enum):
    """Tables the engine reads and writes through the record store"""
    ETL_FILE = "etl_file"
    ETL_RUN = "etl_run"
    RUN_LOG = "etl_run_log"
    DEAD_LETTER_QUEUE = "etl_dead_letter_queue"
    REPROCESSING_LOG = "etl_reprocessing_log"
    FACT_LOAD_DEVIATION = "fato_desvio_carregamento"
