"""Tests for the command line interface and config file handling."""

import argparse
import json
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from batchcompare import __version__
from batchcompare.cli import main
from batchcompare.cli.config import (
    build_analysis_config,
    config_keys,
    explicit_arg_names,
    load_config,
    validate_config,
)
from batchcompare.cli.run import register_parser
from batchcompare.io.downloads import DownloadError


def parse_run(argv):
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(dest="command")
    register_parser(subparsers)
    return parser.parse_args(["run", *argv])


class TestExplicitArgs:

    def test_long_short_and_equals_forms(self):
        names = explicit_arg_names(["--n-sv", "2", "-o", "out", "--min-mean=3", "-v"])
        assert names == {"n_sv", "output", "min_mean", "verbose"}

    def test_values_are_not_options(self):
        assert explicit_arg_names(["--seed", "-5"]) == {"seed"}
        assert explicit_arg_names(None) == set()


class TestBuildAnalysisConfig:

    def test_defaults_without_config(self):
        config = build_analysis_config(parse_run([]), {}, [])
        assert config.n_sv is None
        assert config.run_unbalanced is True
        assert config.check_sex is True
        assert config.output_dir == Path("batchcompare_results")

    def test_config_values_used(self):
        values = {'n_sv': 1, 'ruv_k': 2, 'output_dir': 'from_config', 'run_unbalanced': False}
        config = build_analysis_config(parse_run([]), values, [])
        assert config.n_sv == 1
        assert config.ruv_k == 2
        assert config.output_dir == Path("from_config")
        assert config.run_unbalanced is False

    def test_explicit_cli_overrides_config(self):
        argv = ["--n-sv", "3", "-o", "from_cli", "--skip-unbalanced"]
        values = {'n_sv': 1, 'output_dir': 'from_config', 'run_unbalanced': True, 'voom_normalize': 'quantile'}
        config = build_analysis_config(parse_run(argv), values, argv)
        assert config.n_sv == 3
        assert config.output_dir == Path("from_cli")
        assert config.run_unbalanced is False
        assert config.voom_normalize == "quantile"

    def test_invalid_merged_value(self):
        with pytest.raises(ValueError, match="keep_fraction"):
            build_analysis_config(parse_run([]), {'keep_fraction': 2.0}, [])


class TestLoadConfig:

    def test_yaml(self, tmp_path):
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump({'n_sv': 2, 'pedigree_urls': ['file:///x.txt']}))
        assert load_config(path) == {'n_sv': 2, 'pedigree_urls': ['file:///x.txt']}

    def test_json(self, tmp_path):
        path = tmp_path / "analysis.json"
        path.write_text(json.dumps({'min_mean': 10}))
        assert load_config(path) == {'min_mean': 10}

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(path) == {}

    @pytest.mark.parametrize("name,content,message", [
        ("bad.yaml", "n_sv: [1, 2", "Invalid YAML"),
        ("bad.json", "{\"n_sv\": ", "Invalid JSON"),
        ("list.yaml", "- 1\n- 2\n", "dictionary"),
        ("config.toml", "n_sv = 1", "Unsupported config format"),
    ])
    def test_invalid_files(self, tmp_path, name, content, message):
        path = tmp_path / name
        path.write_text(content)
        with pytest.raises(ValueError, match=message):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")


class TestValidateConfig:

    def test_known_keys_pass(self):
        validate_config({key: None for key in config_keys() if key != 'pedigree_urls'})

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown config keys"):
            validate_config({'n_svs': 2})

    def test_pedigree_urls_must_be_list(self):
        with pytest.raises(ValueError, match="pedigree_urls"):
            validate_config({'pedigree_urls': "ftp://example.org/ped.txt"})


class TestMain:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "run" in capsys.readouterr().out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--version"])
        assert exc.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_argument_bounds(self):
        with pytest.raises(SystemExit) as exc:
            main(["run", "--ruv-k", "0"])
        assert exc.value.code == 2

    def test_bad_config_file(self, tmp_path, capsys):
        path = tmp_path / "analysis.yaml"
        path.write_text("unknown_key: 1\n")
        assert main(["run", "--config", str(path)]) == 1
        assert "Config file error" in capsys.readouterr().out

    def test_download_failure(self, tmp_path, capsys):
        error = DownloadError("http://example.org/montpick_count_table.txt", "connection refused")
        with patch("batchcompare.pipeline.download_file", side_effect=error) as mock_download:
            status = main(["run", "-o", str(tmp_path / "out"), "--cache-dir", str(tmp_path / "cache")])

        assert status == 1
        mock_download.assert_called_once()
        assert "Download failed" in capsys.readouterr().out

    def test_unknown_covariate_column(self, recount_files, tmp_path, capsys):
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump({
            'counts_url': recount_files['counts'].as_uri(),
            'phenotype_url': recount_files['phenotype'].as_uri(),
            'pedigree_urls': [recount_files['pedigree'].as_uri()],
            'cache_dir': str(tmp_path / "cache"),
            'primary_covariate': 'gender',
        }))

        status = main(["run", "-c", str(path), "-o", str(tmp_path / "out")])

        assert status == 1
        assert "ERROR: Sample metadata has no 'gender' column" in capsys.readouterr().out

    @pytest.mark.slow
    def test_run_from_config(self, recount_files, tmp_path, capsys):
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump({
            'counts_url': recount_files['counts'].as_uri(),
            'phenotype_url': recount_files['phenotype'].as_uri(),
            'pedigree_urls': [recount_files['pedigree'].as_uri()],
            'cache_dir': str(tmp_path / "cache"),
            'n_sv': 1,
            'n_empirical_exclude': 100,
            'cat_max_rank': 50,
        }))
        out = tmp_path / "out"

        status = main(["run", "-c", str(path), "-o", str(out), "--skip-unbalanced", "--format", "pdf"])

        assert status == 0
        assert (out / "summary.json").exists()
        assert list((out / "full" / "figures").glob("*.pdf"))
        assert not (out / "unbalanced").exists()
        stdout = capsys.readouterr().out
        assert "Best study factor per method" in stdout
        assert "Complete!" in stdout
