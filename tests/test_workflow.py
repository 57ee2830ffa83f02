"""
End-to-end tests of the tutorial workflow and its command line interface,
run against the in-memory MGnify study from conftest.
"""

import pytest
import yaml

from mgnify_tools import cli, workflow
from mgnify_tools.bootstrap import MissingPackagesError
from mgnify_tools.client import DEFAULT_BASE_URL, MgnifyClient
from mgnify_tools.config import load_config

from conftest import GROUP_VAR, STUDY, FakeSession, build_routes


@pytest.fixture
def config(tmp_path):
    config = load_config()
    config['study']['accession'] = STUDY
    config['output']['results_dir'] = str(tmp_path / 'results')
    config['client']['use_cache'] = False
    config['visualization']['figure_dpi'] = 50
    config['diversity']['alpha_metrics'] = ['shannon', 'observed_features']
    return config


@pytest.fixture
def fake_client():
    return MgnifyClient(session=FakeSession(build_routes()))


# =============================================================================
# WORKFLOW TESTS
# =============================================================================

class TestFetch:
    """Test the fetch step."""

    def test_fetch_filters_pipeline_version(self, config, fake_client, tmp_path):
        table, metadata_df = workflow.fetch_study_data(config, fake_client)

        assert table.shape == (8, 7)
        assert 'MGYA00000008' not in metadata_df.index
        assert (tmp_path / 'results' / 'data' / workflow.COUNTS_FILE).exists()
        assert (tmp_path / 'results' / 'data' / workflow.METADATA_FILE).exists()

    def test_no_matching_analyses_raises(self, config, fake_client):
        config['study']['pipeline_version'] = '3.0'
        with pytest.raises(ValueError, match="No analyses left"):
            workflow.fetch_study_data(config, fake_client)

    def test_study_without_analyses_raises(self, config):
        empty_study = 'MGYS00000002'
        routes = build_routes()
        routes[f"{DEFAULT_BASE_URL}/studies/{empty_study}/analyses"] = {'data': [], 'links': {'next': None}}
        config['study']['accession'] = empty_study

        with pytest.raises(ValueError, match=f"No analyses left for study {empty_study}"):
            workflow.fetch_study_data(config, MgnifyClient(session=FakeSession(routes)))

    def test_saved_data_reloads(self, config, fake_client):
        table, metadata_df = workflow.fetch_study_data(config, fake_client)
        reloaded, reloaded_md = workflow.load_study_data(config)

        assert list(reloaded.ids(axis='sample')) == list(table.ids(axis='sample'))
        assert list(reloaded_md.index) == list(metadata_df.index)
        assert reloaded_md.loc['MGYA00000005', GROUP_VAR] == 'Spain'

    def test_load_without_fetch_raises(self, config):
        with pytest.raises(FileNotFoundError, match="Run the fetch step first"):
            workflow.load_study_data(config)


class TestPrepare:

    def test_genus_relative_abundance(self, config, fake_client):
        table, _ = workflow.fetch_study_data(config, fake_client)
        counts_df, abundance_df = workflow.prepare_tables(table, config)

        assert 'Streptococcus' in counts_df.index
        assert 'Unassigned' in counts_df.index
        assert len(counts_df) == 7
        assert abundance_df.sum(axis=0).round(6).eq(1).all()


class TestTutorial:
    """Run every step against the fake study."""

    def test_run_tutorial_writes_outputs(self, config, fake_client, tmp_path):
        results = workflow.run_tutorial(config, fake_client)

        tables = tmp_path / 'results' / 'tables'
        figures = tmp_path / 'results' / 'figures'
        for name in ['alpha_diversity.csv', 'alpha_diversity_tests.csv', 'alpha_diversity_shannon_pairwise.csv',
                     'abundance_summary.csv', 'ordination.csv', 'permanova.csv', 'differential_abundance.csv']:
            assert (tables / name).exists(), name
        for name in ['alpha_diversity_shannon.png', 'alpha_diversity_observed_features.png', 'composition.png',
                     'beta_diversity_pcoa.png', 'differential_abundance_top_features.png']:
            assert (figures / name).exists(), name

        assert results['diversity']['alpha_tests']['shannon']['test'] == 'Mann-Whitney U'
        assert list(results['diversity']['ordination'].columns) == ['PC1', 'PC2']

        da = results['differential_abundance']
        assert da.index[0] == 'Streptococcus'
        assert da.iloc[0][da.columns[da.columns.str.startswith('lfc_')][0]] > 0

    def test_missing_group_variable(self, config, fake_client):
        config['analysis']['group_variable'] = 'sample_not_there'
        table, metadata_df = workflow.fetch_study_data(config, fake_client)
        counts_df, abundance_df = workflow.prepare_tables(table, config)

        results = workflow.run_diversity_analysis(counts_df, abundance_df, metadata_df, config)
        assert 'alpha_tests' not in results
        assert 'ordination' in results

        with pytest.raises(ValueError, match="group variable"):
            workflow.run_differential_abundance(counts_df, abundance_df, metadata_df, config)


# =============================================================================
# CLI TESTS
# =============================================================================

class TestCli:
    """Test argument parsing and exit codes."""

    def test_defaults(self):
        args = cli.parse_arguments([])

        assert args.step == 'all'
        assert args.config is None
        assert args.no_install is False
        assert args.log_level == 'INFO'

    def test_invalid_step_exits(self):
        with pytest.raises(SystemExit):
            cli.parse_arguments(['--step', 'plot'])

    def test_missing_packages_exit_code(self, monkeypatch):
        def fail(install_missing=True):
            raise MissingPackagesError(['skbio', 'biom'])

        monkeypatch.setattr(cli, 'ensure_packages', fail)
        assert cli.main(['--no-install']) == 1

    def test_no_install_flag_is_passed(self, monkeypatch, tmp_path):
        seen = {}

        def record(install_missing=True):
            seen['install_missing'] = install_missing
            return {}

        monkeypatch.setattr(cli, 'ensure_packages', record)
        monkeypatch.setattr(cli, 'run_step', lambda step, config: None)

        assert cli.main(['--no-install']) == 0
        assert seen['install_missing'] is False

    def test_diversity_step_from_saved_data(self, config, fake_client, monkeypatch, tmp_path):
        workflow.fetch_study_data(config, fake_client)
        config_path = tmp_path / 'config.yml'
        config_path.write_text(yaml.safe_dump(config))
        monkeypatch.setattr(cli, 'ensure_packages', lambda install_missing=True: {})

        assert cli.main(['--config', str(config_path), '--step', 'diversity']) == 0
        assert (tmp_path / 'results' / 'tables' / 'alpha_diversity.csv').exists()
        assert not (tmp_path / 'results' / 'tables' / 'differential_abundance.csv').exists()

    def test_step_error_exit_code(self, config, monkeypatch, tmp_path):
        config_path = tmp_path / 'config.yml'
        config_path.write_text(yaml.safe_dump(config))
        monkeypatch.setattr(cli, 'ensure_packages', lambda install_missing=True: {})

        assert cli.main(['--config', str(config_path), '--step', 'differential']) == 1
