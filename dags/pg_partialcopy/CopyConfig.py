from dataclasses import dataclass, field

# ============================== Config model ===============================

@dataclass(frozen=True)
class SourceConfig:
    database_url: str                        # URL or key-value connection string
    before_transaction_sql: str | None = None


@dataclass(frozen=True)
class DestinationConfig:
    database_url: str
    prepare_command: str | None = None       # run with `sh -c`


@dataclass(frozen=True)
class Step:
    table_name: str                          # destination table; also the source table without select_sql
    select_sql: str | None = None
    before_copy_sql: str | None = None
    after_copy_sql: str | None = None

    @property
    def copy_to_sql(self) -> str:
        if self.select_sql:
            return f"copy ({self.select_sql}) to stdout"
        return f"copy {self.table_name} to stdout"

    @property
    def copy_from_sql(self) -> str:
        return f"copy {self.table_name} from stdin"


@dataclass(frozen=True)
class CopyConfig:
    source: SourceConfig
    destination: DestinationConfig
    steps: tuple[Step, ...] = field(default_factory=tuple)
