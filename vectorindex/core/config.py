import os
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

load_dotenv()


class Settings(BaseModel):
    """Service settings loaded from environment: storage backend, job store, worker endpoint,
    embedding model, index strategy and the job/lock/retention windows."""

    # Blob storage
    storage_type: str = os.getenv("STORAGE_TYPE", "local")  # local | s3
    storage_dir: str = os.getenv("STORAGE_DIR", "./data/storage")
    s3_bucket_name: str = os.getenv("S3_BUCKET_NAME", "")
    aws_region: str = os.getenv("AWS_REGION", "us-east-1")

    # Job persistence
    job_store: str = os.getenv("JOB_STORE", "blob")  # blob | mongo
    mongodb_url: str = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
    database_name: str = os.getenv("DATABASE_NAME", "vector_index")

    # External worker
    indexer_worker_url: str = os.getenv("INDEXER_WORKER_URL", "")
    public_base_url: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

    # Embeddings
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    embedding_dimensions: int = int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))
    embedding_max_retries: int = int(os.getenv("EMBEDDING_MAX_RETRIES", "3"))

    # Nearest-neighbor index
    index_type: str = os.getenv("INDEX_TYPE", "flat")  # flat | hnsw
    hnsw_m: int = int(os.getenv("HNSW_M", "16"))
    hnsw_ef_construction: int = int(os.getenv("HNSW_EF_CONSTRUCTION", "200"))
    hnsw_ef_search: int = int(os.getenv("HNSW_EF_SEARCH", "50"))

    # Local working directories
    temp_dir: str = os.getenv("TEMP_DIR", "./data/temp")
    checkpoint_dir: str = os.getenv("CHECKPOINT_DIR", "./data/checkpoints")

    # Windows
    job_timeout_minutes: int = int(os.getenv("JOB_TIMEOUT_MINUTES", "15"))
    lock_timeout_minutes: int = int(os.getenv("LOCK_TIMEOUT_MINUTES", "60"))
    job_retention_days: int = int(os.getenv("JOB_RETENTION_DAYS", "7"))

    @field_validator(
        "embedding_dimensions",
        "embedding_max_retries",
        "hnsw_m",
        "hnsw_ef_construction",
        "hnsw_ef_search",
        "job_timeout_minutes",
        "lock_timeout_minutes",
        "job_retention_days",
    )
    @classmethod
    def must_be_positive(cls, v):
        """Reject zero or negative limits coming from the environment."""
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("storage_type")
    @classmethod
    def known_storage_type(cls, v):
        if v not in ("local", "s3"):
            raise ValueError("must be 'local' or 's3'")
        return v

    @field_validator("index_type")
    @classmethod
    def known_index_type(cls, v):
        if v not in ("flat", "hnsw"):
            raise ValueError("must be 'flat' or 'hnsw'")
        return v

    @property
    def callback_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/indexing-callback"


settings = Settings()
