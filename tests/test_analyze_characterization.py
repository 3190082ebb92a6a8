import pickle

import pytest
import yaml

import analyze_characterization
from analyze_characterization import load_config, load_test_data, main, run_analysis
from conftest import GAINS, START_TIMES, characterization_records
from prepared_data import ELEVATOR, SIMPLE_MOTOR, ConfigError


def write_config(path, **overrides):
    config = {
        'analysis_type': SIMPLE_MOTOR,
        'units': 'Meters',
        'gains': GAINS[SIMPLE_MOTOR],
        'start_times': START_TIMES,
    }
    config.update(overrides)
    config = {k: v for k, v in config.items() if v is not None}
    path.write_text(yaml.dump(config))
    return path


@pytest.fixture
def data_file(tmp_path):
    path = tmp_path / 'sysid_data.pkl'
    with open(path, 'wb') as f:
        pickle.dump(characterization_records(SIMPLE_MOTOR, n=100), f)
    return path


def test_load_config_defaults(tmp_path):
    config = load_config(write_config(tmp_path / 'c.yaml'))
    assert config['max_size'] == 2048
    assert config['filter_window'] == 9
    assert config['gains'] == GAINS[SIMPLE_MOTOR]


@pytest.mark.parametrize('overrides', [
    {'analysis_type': 'swerve'},
    {'units': 'Parsecs'},
    {'start_times': [0.0, 1.0]},
    {'gains': [1.0, 2.0, 3.0]},
    {'max_size': 0},
    {'filter_window': 4},
])
def test_load_config_rejects_bad_values(tmp_path, overrides):
    if 'gains' in overrides:
        overrides['analysis_type'] = ELEVATOR
    with pytest.raises(ConfigError):
        load_config(write_config(tmp_path / 'c.yaml', **overrides))


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / 'missing.yaml')


def test_load_test_data(data_file):
    storage = load_test_data(data_file, START_TIMES, SIMPLE_MOTOR)
    assert len(storage.slow) == 200
    assert len(storage.fast) == 200
    assert storage.slow[99].dt == 0.0


def test_load_test_data_rejects_bad_records(tmp_path):
    path = tmp_path / 'bad.pkl'
    with open(path, 'wb') as f:
        pickle.dump({'slow': [{'time': 0.0}], 'fast': []}, f)
    with pytest.raises(ConfigError):
        load_test_data(path, START_TIMES, SIMPLE_MOTOR)


def test_run_analysis_without_gains_needs_fit(tmp_path, data_file):
    config = load_config(write_config(tmp_path / 'c.yaml', gains=None))
    raw = load_test_data(data_file, START_TIMES, SIMPLE_MOTOR)
    with pytest.raises(ConfigError):
        run_analysis(raw, config)
    analyzer, gains, gain_fit = run_analysis(raw, config, fit=True)
    assert len(gains) == 3
    assert gain_fit.num_points > 0
    assert analyzer.get_metrics().num_points == 4 * 99


def test_main_writes_report_and_summary(tmp_path, data_file):
    config = write_config(tmp_path / 'c.yaml')
    out_dir = tmp_path / 'out'
    assert main([str(data_file), '--config', str(config), '--output-dir', str(out_dir)]) == 0

    assert (out_dir / 'sysid_report.pdf').stat().st_size > 0
    summary = yaml.safe_load((out_dir / 'sysid_summary.yaml').read_text())
    assert summary['gains'] == {'Ks': 0.3, 'Kv': 2.0, 'Ka': 0.4}
    assert summary['simulation']['r_squared'] == pytest.approx(1.0, abs=1e-9)
    assert 'fit' not in summary


def test_main_with_fit(tmp_path, data_file, capsys):
    config = write_config(tmp_path / 'c.yaml', gains=None)
    out_dir = tmp_path / 'out'
    assert main([str(data_file), '--config', str(config), '--fit',
                 '--output-dir', str(out_dir)]) == 0
    summary = yaml.safe_load((out_dir / 'sysid_summary.yaml').read_text())
    assert set(summary['gains']) == {'Ks', 'Kv', 'Ka'}
    assert 'fit' in summary
    assert 'Fit R²' in capsys.readouterr().out


def test_main_no_save(tmp_path, data_file, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = write_config(tmp_path / 'c.yaml')
    assert main([str(data_file), '--config', str(config), '--no-save']) == 0
    assert not (tmp_path / 'test_outputs').exists()


def test_main_reports_errors(tmp_path, data_file, capsys):
    config = write_config(tmp_path / 'c.yaml', units='Leagues')
    assert main([str(data_file), '--config', str(config), '--no-save']) == 1
    assert 'ERROR' in capsys.readouterr().out


def test_gain_names():
    assert analyze_characterization.gain_names(ELEVATOR) == ['Ks', 'Kv', 'Ka', 'Kg']
