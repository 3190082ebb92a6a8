#!/usr/bin/env python3
"""
Feedforward Characterization Analysis
=====================================

Loads quasistatic (slow) and dynamic (fast) test data, takes feedforward
gains from the config (or fits them with --fit), and validates the gains by
re-simulating every test run:

    - Voltage-domain plots: velocity-portion voltage vs velocity and
      acceleration-portion voltage vs acceleration, with the lines implied
      by Kv and Ka
    - Time-domain plots: raw, filtered and simulated velocity/acceleration
    - Sample interval (dt) plot with its mean
    - RMSE and R² of the simulated velocity

Data file: pickle of {'slow': [...], 'fast': [...]} where every record is a
dict with 'time', 'voltage', 'position' and 'velocity'.

Usage:
    python3 scripts/analyze_characterization.py data.pkl --config analysis.yaml
    python3 scripts/analyze_characterization.py data.pkl --config analysis.yaml --fit
    python3 scripts/analyze_characterization.py data.pkl --config analysis.yaml --plot
"""

import argparse
import logging
import pickle
import sys
from datetime import datetime
from pathlib import Path

import matplotlib
import matplotlib.pyplot as plt
from matplotlib.backends.backend_pdf import PdfPages
import yaml

from analyzer_plot import (
    ACCELERATION_FIT,
    AnalyzerPlot,
    FAST_ACCELERATION,
    FAST_VELOCITY,
    MAX_SIZE,
    SLOW_ACCELERATION,
    SLOW_VELOCITY,
    TIMESTEPS,
    VELOCITY_FIT,
)
from feedforward_fit import fit_feedforward_gains
from prepared_data import (
    ANALYSIS_TYPES,
    ARM,
    ELEVATOR,
    GAIN_COUNTS,
    NUM_START_TIMES,
    UNIT_ABBREVIATIONS,
    ConfigError,
    Storage,
    SysIdError,
    filter_storage,
    prepare_samples,
)

logger = logging.getLogger(__name__)

DEFAULT_FILTER_WINDOW = 9


def setup_logging(level=logging.INFO) -> None:
    """Configure logging for analysis."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%H:%M:%S',
    )


def load_config(path) -> dict:
    """Load and validate an analysis config YAML."""
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {path} must be a mapping")

    config = {
        'analysis_type': raw.get('analysis_type'),
        'units': raw.get('units'),
        'gains': raw.get('gains'),
        'start_times': raw.get('start_times'),
        'max_size': raw.get('max_size', MAX_SIZE),
        'filter_window': raw.get('filter_window', DEFAULT_FILTER_WINDOW),
    }

    if config['analysis_type'] not in ANALYSIS_TYPES:
        raise ConfigError(f"analysis_type must be one of {ANALYSIS_TYPES}, "
                          f"got {config['analysis_type']!r}")
    if config['units'] not in UNIT_ABBREVIATIONS:
        raise ConfigError(f"units must be one of {list(UNIT_ABBREVIATIONS)}, "
                          f"got {config['units']!r}")
    start_times = config['start_times']
    if not isinstance(start_times, list) or len(start_times) != NUM_START_TIMES:
        raise ConfigError(f"start_times must be a list of {NUM_START_TIMES} timestamps")
    config['start_times'] = [float(t) for t in start_times]
    if config['gains'] is not None:
        expected = GAIN_COUNTS[config['analysis_type']]
        if not isinstance(config['gains'], list) or len(config['gains']) != expected:
            raise ConfigError(f"gains must be a list of {expected} values "
                              f"for {config['analysis_type']} analysis")
        config['gains'] = [float(g) for g in config['gains']]
    if not isinstance(config['max_size'], int) or config['max_size'] <= 0:
        raise ConfigError(f"max_size must be a positive integer, got {config['max_size']!r}")
    window = config['filter_window']
    if not isinstance(window, int) or window < 3 or window % 2 == 0:
        raise ConfigError(f"filter_window must be an odd integer >= 3, got {window!r}")
    return config


def _records_to_samples(records, start_times, analysis_type):
    records = sorted(records, key=lambda r: r['time'])
    return prepare_samples(
        [r['time'] for r in records],
        [r['voltage'] for r in records],
        [r['position'] for r in records],
        [r['velocity'] for r in records],
        start_times=start_times,
        analysis_type=analysis_type,
    )


def load_test_data(path, start_times, analysis_type) -> Storage:
    """Load a pickled test data file into raw prepared Storage."""
    try:
        with open(path, 'rb') as f:
            data = pickle.load(f)
    except (OSError, pickle.UnpicklingError) as e:
        raise ConfigError(f"Cannot read test data {path}: {e}") from e
    if not isinstance(data, dict) or 'slow' not in data or 'fast' not in data:
        raise ConfigError(f"{path} must contain a dict with 'slow' and 'fast' records")
    try:
        return Storage(
            slow=_records_to_samples(data['slow'], start_times, analysis_type),
            fast=_records_to_samples(data['fast'], start_times, analysis_type),
        )
    except KeyError as e:
        raise ConfigError(f"{path}: record missing field {e}") from None


def run_analysis(raw, config, fit=False, abort=None):
    """Filter, optionally fit gains, and run one analysis pass.

    Returns (analyzer, gains, gain_fit) where gain_fit is None unless fitted.
    """
    analysis_type = config['analysis_type']
    filtered = filter_storage(raw, config['start_times'], config['filter_window'],
                              analysis_type=analysis_type)
    logger.debug(f"Filtered velocity with a {config['filter_window']}-sample window")

    gain_fit = None
    if fit:
        gain_fit = fit_feedforward_gains(filtered, analysis_type)
        gains = gain_fit.gains
    elif config['gains'] is not None:
        gains = config['gains']
    else:
        raise ConfigError("No gains in config; pass --fit to fit them from the data")

    analyzer = AnalyzerPlot(max_size=config['max_size'])
    analyzer.set_data(raw, filtered, config['units'], gains, config['start_times'],
                      analysis_type, abort)
    return analyzer, gains, gain_fit


def gain_names(analysis_type):
    names = ['Ks', 'Kv', 'Ka']
    if analysis_type == ELEVATOR:
        names.append('Kg')
    elif analysis_type == ARM:
        names.append('Kcos')
    return names


def _xy(points):
    return [p[0] for p in points], [p[1] for p in points]


def build_figures(data, title=''):
    """Voltage-domain, time-domain and timestep figures for one analysis."""
    figures = []

    # Voltage domain
    fig, axes = plt.subplots(1, 2, figsize=(11, 5))
    fig.suptitle(title, fontsize=13)
    for ax, key, fit_line, xlabel, ylabel in [
        (axes[0], VELOCITY_FIT, data.kv_fit,
         'Velocity-Portion Voltage', 'Quasistatic Velocity'),
        (axes[1], ACCELERATION_FIT, data.ka_fit,
         'Acceleration-Portion Voltage', 'Dynamic Acceleration'),
    ]:
        x, y = _xy(data.filtered_data[key])
        ax.scatter(x, y, s=4, alpha=0.5, label='Filtered Data')
        fx, fy = _xy(fit_line)
        ax.plot(fx, fy, 'r-', lw=1.5, label='Fit')
        ax.set_xlabel(xlabel)
        ax.set_ylabel(ylabel)
        ax.set_title(key)
        ax.legend()
        ax.grid(True, alpha=0.3)
    fig.tight_layout()
    figures.append(fig)

    # Time domain
    fig, axes = plt.subplots(2, 2, figsize=(11, 8.5))
    for ax, key, ylabel, sim in [
        (axes[0, 0], SLOW_VELOCITY, data.velocity_label, data.quasistatic_sim),
        (axes[0, 1], SLOW_ACCELERATION, data.acceleration_label, None),
        (axes[1, 0], FAST_VELOCITY, data.velocity_label, data.dynamic_sim),
        (axes[1, 1], FAST_ACCELERATION, data.acceleration_label, None),
    ]:
        x, y = _xy(data.raw_data[key])
        ax.scatter(x, y, s=3, alpha=0.4, label='Raw Data')
        x, y = _xy(data.filtered_data[key])
        ax.scatter(x, y, s=3, alpha=0.6, label='Filtered Data')
        if sim is not None:
            for i, run in enumerate(sim):
                sx, sy = _xy(run)
                ax.plot(sx, sy, 'g-', lw=1.5, label='Simulation' if i == 0 else None)
        ax.set_xlabel('Time (s)')
        ax.set_ylabel(ylabel)
        ax.set_title(key)
        ax.legend(loc='upper right', fontsize=7)
        ax.grid(True, alpha=0.3)
    fig.tight_layout()
    figures.append(fig)

    # Timesteps
    fig, ax = plt.subplots(figsize=(11, 5))
    x, y = _xy(data.filtered_data[TIMESTEPS])
    ax.scatter(x, y, s=4, alpha=0.5, label='Timesteps')
    if data.dt_mean_line:
        mx, my = _xy(data.dt_mean_line)
        ax.plot(mx, my, 'r--', lw=1.5, label='Mean dt')
    ax.set_ylim(0, 50)
    ax.set_xlabel('Time (s)')
    ax.set_ylabel('Change in Time (ms)')
    ax.set_title(TIMESTEPS)
    ax.legend()
    ax.grid(True, alpha=0.3)
    fig.tight_layout()
    figures.append(fig)

    return figures


def generate_report(figures, output_pdf):
    """Write figures to a multi-page PDF."""
    print(f"\nGenerating report: {output_pdf}")
    with PdfPages(output_pdf) as pdf:
        for fig in figures:
            pdf.savefig(fig)
    print(f"Report saved to {output_pdf}")


def export_summary(output_yaml, config, gains, metrics, gain_fit=None):
    """Write gains and fit metrics to YAML."""
    summary = {
        'metadata': {
            'description': 'Feedforward characterization: V = Ks*sgn(v) + Kv*v + Ka*a'
                           + {ELEVATOR: ' + Kg', ARM: ' + Kcos*cos(x)'}.get(
                               config['analysis_type'], ''),
            'analysis_type': config['analysis_type'],
            'units': config['units'],
            'generated': datetime.now().strftime("%Y-%m-%d %H:%M"),
        },
        'gains': {name: float(g) for name, g in zip(gain_names(config['analysis_type']), gains)},
        'simulation': {
            'rmse': float(metrics.rmse),
            'r_squared': float(metrics.r_squared),
            'num_points': int(metrics.num_points),
        },
    }
    if gain_fit is not None:
        summary['fit'] = {
            'r_squared': gain_fit.r_squared,
            'num_points': gain_fit.num_points,
        }
    with open(output_yaml, 'w') as f:
        yaml.dump(summary, f, default_flow_style=False, sort_keys=False)
    print(f"Summary exported to {output_yaml}")
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description='Feedforward characterization analysis')
    parser.add_argument('data', help='Pickled test data file')
    parser.add_argument('--config', required=True, help='Analysis config YAML')
    parser.add_argument('--fit', action='store_true',
                        help='Fit gains from the data instead of using the config gains')
    parser.add_argument('--plot', action='store_true', help='Show plots interactively')
    parser.add_argument('--no-save', action='store_true', help='Do not save report/summary')
    parser.add_argument('--output-dir', help='Output directory (default: test_outputs/sysid_<time>)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    if not args.plot:
        matplotlib.use('Agg')

    try:
        config = load_config(args.config)
        print("Loading test data...")
        raw = load_test_data(args.data, config['start_times'], config['analysis_type'])
        print(f"  {len(raw.slow)} quasistatic samples, {len(raw.fast)} dynamic samples")

        analyzer, gains, gain_fit = run_analysis(raw, config, fit=args.fit)
        metrics = analyzer.get_metrics()
    except SysIdError as e:
        print(f"ERROR: {e}")
        return 1

    print(f"\n{'='*60}")
    print(f"Feedforward Characterization Results ({config['analysis_type']})")
    print(f"{'='*60}")
    for name, g in zip(gain_names(config['analysis_type']), gains):
        print(f"  {name:5s}: {g:+.5f}")
    if gain_fit is not None:
        print(f"  Fit R²: {gain_fit.r_squared:.4f} ({gain_fit.num_points} samples)")
    print(f"\n  Simulated velocity RMSE: {metrics.rmse:.4f}")
    print(f"  Simulated velocity R²:   {metrics.r_squared:.4f}")
    print(f"  Points compared:         {metrics.num_points}")

    # Nothing else writes to this analyzer, so the snapshot can't be contended
    data = analyzer.try_snapshot()
    title = (f"{config['analysis_type']}: RMSE={metrics.rmse:.3f}, "
             f"R²={metrics.r_squared:.3f}")
    figures = build_figures(data, title=title)

    if not args.no_save:
        if args.output_dir:
            out_dir = Path(args.output_dir)
        else:
            timestamp = datetime.now().strftime("%Y_%m_%d_%H_%M_%S")
            out_dir = Path('test_outputs') / f"sysid_{timestamp}"
        out_dir.mkdir(parents=True, exist_ok=True)
        generate_report(figures, out_dir / 'sysid_report.pdf')
        export_summary(out_dir / 'sysid_summary.yaml', config, gains, metrics, gain_fit)

    if args.plot:
        plt.show()
    else:
        for fig in figures:
            plt.close(fig)
    return 0


if __name__ == '__main__':
    sys.exit(main())
