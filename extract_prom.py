import logging
import math
import os
from datetime import datetime, timedelta, timezone

import pandas as pd
import requests

ca_bundle_path = os.getenv("PROM_CA_BUNDLE", "certs/rootCA.crt")

PROM_URL = os.getenv("PROM_URL", "https://prometheus.k8s.lab")
STACKSET = os.getenv("STACKSET", "stackset-prescale-no-hpa")
NAMESPACE = os.getenv("STACKSET_NAMESPACE", "default")


def build_queries(ns: str, stackset: str):
    stacks = f'{stackset}-.*'

    deployment_replicas = f"""
    max by (deployment) (
        kube_deployment_spec_replicas{{namespace="{ns}", deployment=~"{stacks}"}}
    )
    """.strip()

    available_replicas = f"""
    max by (deployment) (
        kube_deployment_status_replicas_available{{namespace="{ns}", deployment=~"{stacks}"}}
    )
    """.strip()

    hpa_min_replicas = f"""
    max by (horizontalpodautoscaler) (
        kube_horizontalpodautoscaler_spec_min_replicas{{namespace="{ns}", horizontalpodautoscaler=~"{stacks}"}}
    )
    """.strip()

    requests_per_stack = f"""
    sum by (exported_service) (
        rate(nginx_ingress_controller_requests{{exported_namespace="{ns}", ingress="{stackset}"}}[1m])
    )
    """.strip()

    req_duration_avg_ms = f"""
    1000 *
    sum(rate(nginx_ingress_controller_request_duration_seconds_sum{{exported_namespace="{ns}", ingress="{stackset}"}}[30s]))
    /
    sum(rate(nginx_ingress_controller_request_duration_seconds_count{{exported_namespace="{ns}", ingress="{stackset}"}}[30s]))
    """.strip()

    return {
        "deployment_replicas": deployment_replicas,
        "available_replicas": available_replicas,
        "hpa_min_replicas": hpa_min_replicas,
        "requests_per_stack": requests_per_stack,
        "req_duration_avg_ms": req_duration_avg_ms,
    }


def query_range(prom_url, promql, start, end, step):
    r = requests.get(
        f"{prom_url}/api/v1/query_range",
        params={"query": promql, "start": start, "end": end, "step": step},
        timeout=60,
        verify=ca_bundle_path if os.path.exists(ca_bundle_path) else True,
    )
    r.raise_for_status()
    return r.json()


def results_to_df(result_json, series_name):
    rows = []
    for serie in result_json.get("data", {}).get("result", []):
        labels = serie.get("metric", {})
        stack = (
            labels.get("deployment")
            or labels.get("horizontalpodautoscaler")
            or labels.get("exported_service")
        )
        for ts, val in serie.get("values", []):
            ts = float(ts)
            try:
                value = float(val)
            except (TypeError, ValueError):
                value = math.nan
            rows.append(
                {
                    "ts": pd.to_datetime(ts, unit="s", utc=True),
                    "value": value,
                    "series": series_name,
                    "stack": stack,
                }
            )
    if not rows:
        return pd.DataFrame(columns=["ts", "value", "series", "stack"])
    return pd.DataFrame(rows).sort_values("ts")


def extract(user_count=None, response_time=None, window_minutes=10):
    logging.basicConfig(format="[%(asctime)s] %(name)s %(message)s", level=logging.INFO)
    step = "5s"

    now = datetime.now(timezone.utc)
    START = int((now - timedelta(minutes=window_minutes)).timestamp())
    END = int(now.timestamp())
    queries = build_queries(NAMESPACE, STACKSET)

    all_dfs = []
    for name, promql in queries.items():
        j = query_range(PROM_URL, promql, START, END, step)
        df = results_to_df(j, name)
        all_dfs.append(df)

    if user_count is not None:
        all_dfs.append(pd.DataFrame(user_count))
    if response_time is not None:
        all_dfs.append(pd.DataFrame(response_time).sort_values("ts"))

    data = pd.concat(all_dfs, ignore_index=True) if all_dfs else pd.DataFrame()
    os.makedirs("./tests/results", exist_ok=True)
    csv_file = f"./tests/results/prom_extract_{STACKSET}_{now.strftime('%Y%m%d%H%M')}.csv"
    data.to_csv(csv_file, index=False)
    logging.info(f"Saved data to {csv_file}")
    return csv_file


if __name__ == "__main__":
    extract()
