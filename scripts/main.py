# scripts/main.py
import argparse, os, sys, time, json, yaml, logging, random, platform, subprocess
from pathlib import Path
from datetime import datetime, timezone
import numpy as np
import arviz as az
import pandas as pd

from aqcal.data.adjacency import read_graph_file, write_graph_file
from aqcal.data.make_synthetic_data import make_synthetic_calibration_data, make_regional_adjacency
from aqcal.data.observations import ObservationStore
from aqcal.model.specification import specification_from_config
from aqcal.model.inference import fit_models
from aqcal.model.fitted import summary_table
from aqcal.model.sampler import sample_posterior
from aqcal.model.errors import CalibrationError
from aqcal.evaluation.loo import compare_models, score_loo, pit_uniformity, plot_pit_histogram
from aqcal.evaluation.cross_validation import cross_validate, plot_cv_rmse
from aqcal.evaluation.model_fit import evaluate_ppc

# ---- Project root anchored ----
PROJECT_ROOT = Path(__file__).resolve().parents[1]


def setup_logging(run_dir: Path):
    run_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        handlers=[logging.FileHandler(run_dir / "run.log"), logging.StreamHandler(sys.stdout)],
        force=True,
    )


def save_env(run_dir: Path):
    meta = {
        "python": sys.version,
        "platform": platform.platform(),
        "time_utc": datetime.now(timezone.utc).isoformat(),
    }
    try:
        meta["git_commit"] = subprocess.check_output(["git", "rev-parse", "HEAD"]).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        meta["git_commit"] = None
    (run_dir / "env.json").write_text(json.dumps(meta, indent=2))


def get_run_dir(output_root: Path, cfg_path: str, run_override: str | None) -> Path:
    # Prefer explicit --run, then RUN_ID env, then timestamped default
    run_id = run_override or os.environ.get("RUN_ID") or \
             f"{Path(cfg_path).stem}_{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}"
    os.environ["RUN_ID"] = run_id
    run_dir = output_root / run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def load_observations(data_cfg: dict, seed: int) -> pd.DataFrame:
    """CSV from data_cfg['path'] when given, else the synthetic calibration set."""
    path = data_cfg.get("path")
    if path:
        df = pd.read_csv(PROJECT_ROOT / path)
        logging.info(f"Loaded observations from {path}: {df.shape}")
        return df
    return make_synthetic_calibration_data(
        n_rows=int(data_cfg.get("n_rows", 600)),
        n_super_regions=int(data_cfg.get("n_super_regions", 3)),
        countries_per_region=int(data_cfg.get("countries_per_region", 6)),
        region_offsets=tuple(data_cfg.get("region_offsets", (-0.4, 0.0, 0.5))),
        country_sd=float(data_cfg.get("country_sd", 0.0)),
        seed=seed,
    )


def save_dataset(df: pd.DataFrame, run_dir: Path, name: str = "observations"):
    data_dir = run_dir / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    fp = data_dir / f"{name}.csv"
    df.to_csv(fp, index=False)
    manifest = {
        "file": fp.name,
        "rows": int(df.shape[0]),
        "cols": int(df.shape[1]),
        "columns": df.columns.tolist(),
    }
    (data_dir / "dataset_manifest.json").write_text(json.dumps(manifest, indent=2))
    logging.info(f"Saved observations -> {fp}")


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default="configs/exp_baseline.yaml")
    ap.add_argument("--run", default=None, help="Optional run name (overrides timestamp)")
    args = ap.parse_args()

    cfg_path = (PROJECT_ROOT / args.config).resolve()
    with open(cfg_path, "r") as f:
        cfg = yaml.safe_load(f)

    seed = cfg.get("seed", 123)
    data_cfg = cfg.get("data") or {}
    fit_cfg = cfg.get("inference") or {}
    models_cfg = cfg["models"]
    evaluation = cfg.get("evaluation") or {}

    np.random.seed(seed); random.seed(seed)

    output_root = (PROJECT_ROOT / cfg.get("output_dir", "output")).resolve()
    run_dir = get_run_dir(output_root, cfg_path=str(cfg_path), run_override=args.run)

    setup_logging(run_dir)
    logging.info(f"PROJECT_ROOT={PROJECT_ROOT}")
    logging.info(f"Config path = {cfg_path}")
    logging.info(f"PID={os.getpid()} | RUN_ID={os.environ['RUN_ID']} | run_dir={run_dir}")

    save_env(run_dir)
    (run_dir / "config_used.yaml").write_text(yaml.safe_dump(cfg))

    # ---- Observations & adjacency ----
    df = load_observations(data_cfg, seed)
    save_dataset(df, run_dir)
    store = ObservationStore.from_frame(df)

    graph_path = data_cfg.get("graph_path")
    graph = read_graph_file(PROJECT_ROOT / graph_path) if graph_path else make_regional_adjacency(df)
    write_graph_file(graph, run_dir / "data" / "adjacency.graph")
    logging.info(f"{store!r} | {graph!r}")

    # ---- Model variants, each its own FittedModel ----
    specs = {m["name"]: specification_from_config(m) for m in models_cfg}
    t0 = time.time()
    fitted = fit_models(specs, store, graph, fit_cfg)
    logging.info(f"Fitted {len(fitted)} models in {time.time()-t0:.1f}s")

    model_dir = run_dir / "models"
    for name, fm in fitted.items():
        fm.to_netcdf(model_dir / f"{name}.nc")
        summary_table(fm).to_csv(model_dir / f"{name}_summary.csv")
    logging.info(f"Saved FittedModels -> {model_dir}")

    # ---- LOO comparison (uncorrected sum of log CPO) ----
    loo_dir = run_dir / "eval" / "loo"
    loo_dir.mkdir(parents=True, exist_ok=True)
    comparison = compare_models(fitted)
    comparison.to_csv(loo_dir / "comparison.csv")
    logging.info(f"LOO comparison:\n{comparison}")

    pit_stats = {}
    for name, fm in fitted.items():
        res = score_loo(fm)
        res.as_frame().to_csv(loo_dir / f"{name}_cpo_pit.csv", index=False)
        pit_stats[name] = pit_uniformity(res.pit)
        plot_pit_histogram(res.pit, out_path=loo_dir / f"{name}_pit.png", title=f"LOO PIT: {name}")
    (loo_dir / "pit_uniformity.json").write_text(json.dumps(pit_stats, indent=2))

    # ---- Posterior predictive fit ----
    ppc_cfg = evaluation.get("ppc") or {}
    if ppc_cfg.get("enabled", True):
        n_draws = int(ppc_cfg.get("draws", 1000))
        groups = store.column("super_region")[store.observed_mask]
        ppc_metrics = {}
        for name, fm in fitted.items():
            ppc_dir = run_dir / "eval" / "ppc" / name
            ppc_dir.mkdir(parents=True, exist_ok=True)
            idata = sample_posterior(fm, n_draws, seed=seed)
            az.to_netcdf(idata, ppc_dir / "posterior.nc")
            results, _ = evaluate_ppc(idata, observed_var="y_obs", output_dir=ppc_dir,
                                      hdi_prob=float(ppc_cfg.get("hdi_prob", 0.95)), groups=groups)
            ppc_metrics[name] = results["fit_metrics"]
        (run_dir / "eval" / "ppc" / "metrics.json").write_text(json.dumps(ppc_metrics, indent=2))
        logging.info(f"PPC metrics -> {run_dir / 'eval' / 'ppc' / 'metrics.json'}")

    # ---- Spatial-block cross-validation ----
    cv_cfg = evaluation.get("cross_validation") or {}
    if cv_cfg.get("enabled", True):
        cv_dir = run_dir / "eval" / "cv"
        cv_dir.mkdir(parents=True, exist_ok=True)
        key = cv_cfg.get("key", "super_region")
        blocks = cv_cfg.get("blocks")
        cv_results, cv_summary = {}, {}
        for name, spec in specs.items():
            try:
                res = cross_validate(store, spec, blocks, graph=graph, key=key, cfg={**fit_cfg, **cv_cfg})
            except CalibrationError as e:
                logging.warning(f"CV skipped for {name}: {e}")
                continue
            cv_results[name] = res
            res.as_frame().to_csv(cv_dir / f"{name}_folds.csv", index=False)
            cv_summary[name] = {"mean_rmse": res.mean_rmse, "n_folds": len(res.folds), "n_failed": len(res.errors)}
        (cv_dir / "summary.json").write_text(json.dumps(cv_summary, indent=2))
        if cv_results:
            plot_cv_rmse(cv_results, out_path=cv_dir / "cv_rmse.png")
        logging.info(f"CV summary: {cv_summary}")


if __name__ == "__main__":
    os.environ.setdefault("OMP_NUM_THREADS", "1")
    os.environ.setdefault("MKL_NUM_THREADS", "1")
    main()
