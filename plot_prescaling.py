import glob
import sys
from pathlib import Path

import matplotlib.pyplot as plt
import matplotlib.ticker as mtick
import numpy as np
import pandas as pd

plt.style.use("bmh")
plt.rcParams.update(
    {
        "font.size": 10,
        "axes.titlesize": 14,
        "axes.labelsize": 11,
        "legend.fontsize": 9,
        "savefig.dpi": 300,
    }
)

# series names
REPLICAS_SERIES = "deployment_replicas"
REPLICAS_LABEL = "Deployment replicas"
AVAILABLE_SERIES = "available_replicas"
HPA_MIN_SERIES = "hpa_min_replicas"
HPA_MIN_LABEL = "HPA minReplicas"
RPS_SERIES = "requests_per_stack"
RPS_LABEL = "Requests/s"
DUR_SERIES = "req_duration_avg_ms"
DUR_LABEL = "Request duration (ms)"
RTM_SERIES = "response_time"
RTM_LABEL = "Response time (locust)"

STACK_COLORS = ["#1f77b4", "#2ca02c", "#d62728", "#9467bd", "#8c564b", "#e377c2"]


# ==============================
#  HELPERS
# ==============================


def _to_ts_utc(ts_like):
    return pd.to_datetime(ts_like, utc=True, errors="coerce")


def to_rel_seconds(ts_like, t0):
    ts = _to_ts_utc(ts_like)
    delta = ts - _to_ts_utc(t0)
    if hasattr(delta, "dt"):
        return delta.dt.total_seconds().astype(float)
    if isinstance(delta, pd.TimedeltaIndex):
        return delta / np.timedelta64(1, "s")
    return float(delta.total_seconds())


def mmss_fmt(x, pos):
    x = max(0, float(x))
    m = int(x // 60)
    s = int(x % 60)
    return f"{m:02d}:{s:02d}"


def pivot_per_stack(data: pd.DataFrame, series: str) -> pd.DataFrame | None:
    df = data[data["series"] == series]
    if df.empty or "stack" not in df.columns:
        return None
    return df.groupby(["ts", "stack"])["value"].max().unstack("stack").sort_index()


def prescaled_windows(replicas: pd.Series, baseline: float) -> list[tuple[pd.Timestamp, pd.Timestamp]]:
    """Time ranges in which a stack ran above its final (static) replica count."""
    above = replicas.fillna(baseline) > baseline
    windows = []
    start = None
    for ts, flag in above.items():
        if flag and start is None:
            start = ts
        elif not flag and start is not None:
            windows.append((start, ts))
            start = None
    if start is not None:
        windows.append((start, replicas.index[-1]))
    return windows


def summary_rows(replicas: pd.DataFrame | None, data: pd.DataFrame) -> list[tuple[str, str]]:
    rows = []
    if replicas is not None:
        for stack in replicas.columns:
            col = replicas[stack].dropna()
            if col.empty:
                continue
            windows = prescaled_windows(col, col.iloc[-1])
            held = sum((end - start).total_seconds() for start, end in windows)
            rows.append((f"{stack} max / final replicas", f"{col.max():.0f} / {col.iloc[-1]:.0f}"))
            rows.append((f"{stack} time above final", f"{held:.0f}s"))
    rtm = data[data["series"] == RTM_SERIES]["value"]
    rows.append((f"{RTM_LABEL} (mean)", f"{rtm.mean():.2f}" if not rtm.empty else "-"))
    return rows


def plot(data: pd.DataFrame, file_name: str):
    replicas = pivot_per_stack(data, REPLICAS_SERIES)
    hpa_min = pivot_per_stack(data, HPA_MIN_SERIES)
    rps = pivot_per_stack(data, RPS_SERIES)
    df_rtm = data[data["series"] == RTM_SERIES][["ts", "value"]].copy()

    ts_min = [p.index.min() for p in (replicas, hpa_min, rps) if p is not None and not p.empty]
    if not df_rtm.empty:
        ts_min.append(_to_ts_utc(df_rtm["ts"]).min())
    t0 = min(ts_min) if ts_min else pd.Timestamp.utcnow()

    stacks = sorted(
        set(replicas.columns if replicas is not None else [])
        | set(hpa_min.columns if hpa_min is not None else [])
    )
    colors = {s: STACK_COLORS[i % len(STACK_COLORS)] for i, s in enumerate(stacks)}

    # ==============================
    #  FIGURE: replicas, traffic, summary table
    # ==============================
    fig = plt.figure(figsize=(10, 8), layout="constrained")
    gs = fig.add_gridspec(nrows=4, ncols=1, height_ratios=[3.0, 2.5, 1.5, 0.3])
    ax_top = fig.add_subplot(gs[0])
    ax_mid = fig.add_subplot(gs[1], sharex=ax_top)
    ax_tbl = fig.add_subplot(gs[2])
    ax_fname = fig.add_subplot(gs[3])
    ax_fname.axis("off")
    ax_fname.text(0.5, 0, file_name, ha="center")

    # ------------------------------
    #  Top: replicas per stack (+ HPA floors)
    # ------------------------------
    ax_top.set_title("Replicas per stack")
    ax_top.tick_params(labelbottom=False)
    if replicas is not None:
        for stack in replicas.columns:
            ax_top.plot(
                to_rel_seconds(replicas.index, t0),
                replicas[stack],
                linewidth=1.5,
                color=colors.get(stack),
                label=f"{stack} {REPLICAS_LABEL.lower()}",
            )
            col = replicas[stack].dropna()
            if not col.empty:
                for start, end in prescaled_windows(col, col.iloc[-1]):
                    ax_top.axvspan(
                        to_rel_seconds(start, t0),
                        to_rel_seconds(end, t0),
                        color=colors.get(stack),
                        alpha=0.08,
                    )
    if hpa_min is not None:
        for stack in hpa_min.columns:
            ax_top.plot(
                to_rel_seconds(hpa_min.index, t0),
                hpa_min[stack],
                linestyle="--",
                linewidth=1.2,
                color=colors.get(stack),
                label=f"{stack} {HPA_MIN_LABEL}",
            )
    ax_top.set_ylabel(REPLICAS_LABEL)
    ax_top.yaxis.set_major_locator(mtick.MaxNLocator(integer=True))
    ax_top.legend(loc="upper left", ncols=2, frameon=True)

    # ------------------------------
    #  Mid: requests per stack + response time
    # ------------------------------
    ax_mid.set_title("Traffic per stack")
    if rps is not None:
        for stack in rps.columns:
            ax_mid.plot(
                to_rel_seconds(rps.index, t0),
                rps[stack],
                linewidth=1.2,
                color=colors.get(stack, "#7f7f7f"),
                label=str(stack),
            )
    ax_mid.set_ylabel(RPS_LABEL)

    ax_rtm = ax_mid.twinx()
    ax_rtm.grid(False)
    if not df_rtm.empty:
        df_rtm = df_rtm.sort_values("ts")
        ax_rtm.plot(
            to_rel_seconds(df_rtm["ts"], t0),
            df_rtm["value"],
            linewidth=0.8,
            color="#8cd0ac",
            label=RTM_LABEL,
        )
    ax_rtm.set_ylabel(RTM_LABEL)
    ax_mid.set_xlabel("Time (mm:ss)")
    ax_mid.xaxis.set_major_formatter(mtick.FuncFormatter(mmss_fmt))
    ax_mid.legend(loc="upper left", frameon=True)

    # ------------------------------
    #  Summary
    # ------------------------------
    ax_tbl.axis("off")
    rows = summary_rows(replicas, data)
    tbl = ax_tbl.table(
        cellText=[[k, v] for k, v in rows],
        cellLoc="left",
        colWidths=[0.62, 0.38],
        bbox=[0.2, 0.06, 0.6, 0.88],
        edges="closed",
    )
    tbl.auto_set_font_size(False)
    tbl.set_fontsize(9)

    fig.set_constrained_layout_pads(w_pad=0.03, h_pad=0.03, hspace=0.03)
    return fig


def main():
    arg_file = sys.argv[1] if len(sys.argv) > 1 else None
    if arg_file and Path(arg_file).is_file():
        file_name = arg_file
    else:
        candidates = glob.glob("tests/results/prom_extract*") or glob.glob("prom_extract*.csv")
        if not candidates:
            raise SystemExit("No CSV file found. Pass the path as an argument.")
        file_name = max(candidates)
    print(f"Reading data from {file_name}")

    data = pd.read_csv(file_name)
    data["ts"] = _to_ts_utc(data["ts"])
    plot(data, file_name)
    plt.show()


if __name__ == "__main__":
    main()
