from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

import pendulum

from airflow.decorators import dag, task
from airflow.exceptions import AirflowFailException
from airflow.models import Variable

from pg_partialcopy.alerts import format_failure, send_discord_alert
from pg_partialcopy.config_loader import load_config
from pg_partialcopy.engine import PartialCopyEngine
from pg_partialcopy.errors import PartialCopyError

log = logging.getLogger(__name__)

# ------------------------ Config discovery (DAG-layer) ------------------------
def _config_dir() -> Path:
    return Path(Variable.get("PG_PARTIALCOPY_CONFIG_DIR", default_var="/opt/airflow/dags/partialcopy").strip())

def _discover_configs(config_dir: Path) -> List[Path]:
    if not config_dir.is_dir():
        log.warning("Partial copy config directory not found: %s", config_dir)
        return []
    return sorted(config_dir.glob("*.toml"))

# ------------------------ DAG creation helpers ------------------------
def _build_partial_copy_dag(config_path: Path):
    dag_id = f"pg_partialcopy_{config_path.stem}"
    path_str = str(config_path)

    @dag(
        dag_id=dag_id,
        schedule=None,
        start_date=pendulum.datetime(2025, 8, 18, tz="UTC"),
        catchup=False,
        max_active_runs=1,
        tags=["pg_partialcopy", config_path.stem],
        description=f"Partial copy defined by {config_path.name}",
    )
    def partial_copy_dag():

        @task(do_xcom_push=False)
        def partial_copy() -> Dict[str, Any]:
            log.info("Running partial copy from %s", path_str)
            cfg = load_config(path_str)
            engine = PartialCopyEngine(cfg)
            try:
                return engine.run()
            except PartialCopyError as e:
                webhook = Variable.get("DISCORD_WEBHOOK", default_var="")
                send_discord_alert(format_failure(e, Path(path_str).name), webhook_url=webhook or None)
                raise AirflowFailException(str(e)) from e

        partial_copy()

    return partial_copy_dag()

# ------------------------ Generate all DAGs from config directory ------------------------
_created = 0
for _path in _discover_configs(_config_dir()):
    dag_obj = _build_partial_copy_dag(_path)
    # Ensure Airflow UI shows this file as the DAG source
    dag_obj.fileloc = __file__
    globals()[dag_obj.dag_id] = dag_obj
    _created += 1
log.debug("Generated %d partial copy DAG(s)", _created)
