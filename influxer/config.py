from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

TIME_PRECISIONS = ("s", "ms", "u")


class InfluxerSettings(BaseSettings):
    host: str = Field("localhost", description="InfluxDB host name.")
    port: int = Field(8086, description="InfluxDB HTTP API port.")
    database: str = Field("influxer", description="Database points are written to.")
    username: str = Field("root", description="Database user.")
    password: str = Field("root", description="Database password.")
    use_ssl: bool = Field(False, description="Talk to the HTTP API over https.")
    time_precision: str = Field(
        "s", description="Precision of timestamps sent with points (s, ms or u)."
    )
    timeout_seconds: float = Field(5.0, description="HTTP request timeout.")

    @field_validator("time_precision")
    def ensure_known_precision(cls, value: str) -> str:
        if value not in TIME_PRECISIONS:
            raise ValueError(f"time_precision must be one of {', '.join(TIME_PRECISIONS)}")
        return value

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_ssl else "http"
        return f"{scheme}://{self.host}:{self.port}"

    class Config:
        env_prefix = "INFLUXER_"


settings = InfluxerSettings()
