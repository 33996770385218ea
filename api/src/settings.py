from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='orders_api_')

    order_expiry_minutes: int = Field(default=120)
    express_shipping_cost: int = Field(default=20000)
    public_base_url: str = Field(default='http://localhost:5173')

    stock_loop_sleep_duration: float = Field(default=3.0)
    expiry_loop_sleep_duration: float = Field(default=60.0)
    order_events_loop_sleep_duration: float = Field(default=1.0)


class PostgresSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='orders_postgres_')

    host: str = Field(default='127.0.0.1')
    port: int = Field(default=5432)
    user: str
    password: str
    db: str

    def get_url(self, driver: str | None, db: str | None = None):
        scheme = f'postgresql{f'+{driver}' if driver else ''}'
        return f'{scheme}://{self.user}:{self.password}@{self.host}:{self.port}/{db or self.db}'


class KafkaSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='orders_kafka_')

    bootstrap_servers: str = Field(default='localhost:19092')
    order_topic: str = Field(default='order')


class MidtransSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='orders_midtrans_')

    server_key: str
    environment: str = Field(default='sandbox')
    connection_timeout_sec: float = 30.0

    @property
    def is_production(self) -> bool:
        return self.environment == 'production'

    @property
    def snap_base_url(self) -> str:
        return 'https://app.midtrans.com' if self.is_production else 'https://app.sandbox.midtrans.com'

    @property
    def api_base_url(self) -> str:
        return 'https://api.midtrans.com' if self.is_production else 'https://api.sandbox.midtrans.com'


class SupabaseSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='orders_supabase_')

    url: str
    anon_key: str
    connection_timeout_sec: float = 10.0


settings = Settings()
pg_settings = PostgresSettings()  # type: ignore
kafka_settings = KafkaSettings()
midtrans_settings = MidtransSettings()  # type: ignore
supabase_settings = SupabaseSettings()  # type: ignore
