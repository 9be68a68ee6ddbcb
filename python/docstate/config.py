from pydantic import BaseModel, Field


class EngineSettings(BaseModel):
    """
    Tunables shared by the state engine and the schedulers.
    Durations are in seconds.
    """

    max_snapshots: int = Field(10, ge=1, description="Undo history length.")
    diff_cache_size: int = Field(100, ge=1, description="Cached detect_changes results.")
    change_log_size: int = Field(100, ge=1, description="Change-log entries kept, newest first.")
    analysis_debounce: float = Field(3.0, ge=0, description="Idle time before an incremental analysis runs.")
    save_debounce: float = Field(5.0, ge=0, description="Idle time before a debounced save runs.")
    post_save_analysis_delay: float = Field(
        1.0, ge=0, description="Delay between a successful save and the follow-up incremental analysis."
    )


DEFAULT_SETTINGS = EngineSettings()
