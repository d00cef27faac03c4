from pathlib import Path

from pydantic_settings import BaseSettings

DATA_DIR = Path(__file__).resolve().parent.parent / "data"


class CaptureSettings(BaseSettings):
    sample_rate: int = 16000
    channels: int = 1
    chunk_interval_ms: int = 10000
    min_segment_ms: int = 2000
    max_segment_ms: int = 15000
    duration_tolerance_ms: int = 1500
    max_capture_ms: int = 15000
    storage_dir: str = ""

    model_config = {"env_prefix": "CAPTURE_"}


class RecognitionSettings(BaseSettings):
    max_concurrent_requests: int = 2
    confidence_threshold: float = 0.5
    min_confidence_to_show: float = 0.3
    request_timeout_s: float = 10.0
    max_session_ms: int = 15000
    ambiguity_margin: float = 0.05
    resolved_margin: float = 0.10
    top_k: int = 10
    extension_min_ms: int = 3000
    extension_max_ms: int = 10000
    onset_match_threshold: float = 80.0
    adjacency_path: str = str(DATA_DIR / "adjacency.json")
    classifier_url: str = "http://localhost:8002"

    model_config = {"env_prefix": "RECOGNITION_"}


class GatewaySettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    max_sessions: int = 10

    model_config = {"env_prefix": "GATEWAY_"}


class ClassifierSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8002
    model_size: str = "large-v3"
    device: str = "auto"
    compute_type: str = "auto"
    ollama_url: str = "http://localhost:11434"
    model_name: str = "qwen2.5"
    temperature: float = 0.3
    max_tokens: int = 1024
    top_k: int = 10
    pause_threshold_db: float = -40.0
    pause_window_ms: int = 300
    onset_window_ms: int = 2500
    onset_words: int = 4

    model_config = {"env_prefix": "CLASSIFIER_"}
