from pydantic import BaseModel
import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings(BaseModel):
    api_token: str = os.getenv("API_TOKEN", "change-me")
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    media_service_url: str = os.getenv("MEDIA_SERVICE_URL", "http://localhost:8090")
    media_service_timeout: float = float(os.getenv("MEDIA_SERVICE_TIMEOUT", 600))
    step_attempts: int = int(os.getenv("STEP_ATTEMPTS", 3))
    step_backoff_ms: int = int(os.getenv("STEP_BACKOFF_MS", 30000))
    parent_attempts: int = int(os.getenv("PARENT_ATTEMPTS", 1))
    job_retention_seconds: int = int(os.getenv("JOB_RETENTION_SECONDS", 7 * 24 * 3600))
    max_status_longpoll_seconds: int = int(os.getenv("MAX_STATUS_LONGPOLL_SECONDS", 1200))
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Label detection features; label detection and speech are on unless disabled
    enable_label_detection: bool = _flag("ENABLE_LABEL_DETECTION", "true")
    enable_object_tracking: bool = _flag("ENABLE_OBJECT_TRACKING", "false")
    enable_face_detection: bool = _flag("ENABLE_FACE_DETECTION", "false")
    enable_person_detection: bool = _flag("ENABLE_PERSON_DETECTION", "false")
    enable_speech_transcription: bool = _flag("ENABLE_SPEECH_TRANSCRIPTION", "true")

settings = Settings()
