"""Tests for mnemos layered configuration."""
import json

import pytest
from pydantic import ValidationError

from mnemos.config import GraphConfig, MnemosConfig, RetentionConfig, load_config
from mnemos.errors import ConfigError


class TestLoadConfig:
    def test_defaults(self, tmp_mnemos_dir):
        cfg = load_config()
        assert cfg.search.memories_threshold == 0.3
        assert cfg.readiness.proceed_threshold == 0.7
        assert cfg.retention.delete_threshold == 0.15
        assert cfg.supersession.confidence_threshold == 0.9
        assert cfg.database == tmp_mnemos_dir / "mnemos.db"

    def test_file_values(self, tmp_mnemos_dir):
        (tmp_mnemos_dir / "config.json").write_text(
            json.dumps({"search": {"alpha": 0.7}, "graph": {"centrality_method": "degree"}})
        )
        cfg = load_config()
        assert cfg.search.alpha == 0.7
        assert cfg.graph.centrality_method == "degree"

    def test_precedence(self, tmp_mnemos_dir, monkeypatch):
        (tmp_mnemos_dir / "config.json").write_text(
            json.dumps({"embedding": {"dimension": 256}, "llm": {"model": "from-file"}})
        )
        monkeypatch.setenv("MNEMOS_EMBEDDING_DIM", "128")
        monkeypatch.setenv("MNEMOS_LLM_MODEL", "from-env")
        cfg = load_config(overrides={"llm": {"model": "from-override"}})
        assert cfg.embedding.dimension == 128
        assert cfg.llm.model == "from-override"

    def test_explicit_path_and_db_override(self, tmp_path, tmp_mnemos_dir, monkeypatch):
        path = tmp_path / "other.json"
        path.write_text(json.dumps({"db_path": str(tmp_path / "x.db")}))
        assert load_config(path).database == tmp_path / "x.db"
        monkeypatch.setenv("MNEMOS_DB_PATH", str(tmp_path / "env.db"))
        assert load_config(path).database == tmp_path / "env.db"

    def test_unknown_keys_ignored(self, tmp_mnemos_dir):
        cfg = load_config(overrides={"search": {"nope": 1}, "bogus": {"a": 1}})
        assert not hasattr(cfg.search, "nope")

    def test_list_becomes_tuple(self, tmp_mnemos_dir):
        cfg = load_config(overrides={"indexing": {"doc_extensions": [".md"]}})
        assert cfg.indexing.doc_extensions == (".md",)

    def test_skip_embeddings_env(self, tmp_mnemos_dir, monkeypatch):
        monkeypatch.setenv("MNEMOS_SKIP_EMBEDDINGS", "1")
        assert load_config().embedding.skip_model is True


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"search": {"alpha": 1.5}},
            {"readiness": {"warn_threshold": 0.8, "proceed_threshold": 0.7}},
            {"retention": {"delete_threshold": 0.5, "keep_threshold": 0.3}},
            {"embedding": {"dimension": 0}},
            {"graph": {"centrality_method": "pagerank"}},
            {"search": {"alpha": "high"}},
            {"supersession": {"enabled": "yes"}},
        ],
    )
    def test_rejects_bad_values(self, tmp_mnemos_dir, overrides):
        with pytest.raises(ConfigError):
            load_config(overrides=overrides)

    def test_bad_env(self, tmp_mnemos_dir, monkeypatch):
        monkeypatch.setenv("MNEMOS_EMBEDDING_DIM", "big")
        with pytest.raises(ConfigError):
            load_config()

    def test_malformed_file(self, tmp_mnemos_dir):
        (tmp_mnemos_dir / "config.json").write_text("{not json")
        with pytest.raises(ConfigError):
            load_config()
        (tmp_mnemos_dir / "config.json").write_text("[1, 2]")
        with pytest.raises(ConfigError):
            load_config()

    def test_to_dict_is_json_serializable(self, tmp_mnemos_dir):
        data = MnemosConfig().to_dict()
        assert json.loads(json.dumps(data))["search"]["top_k"] == 10

    def test_error_names_the_field(self, tmp_mnemos_dir):
        with pytest.raises(ConfigError, match=r"readiness: .*warn_threshold must not exceed"):
            load_config(overrides={"readiness": {"warn_threshold": 0.9}})
        with pytest.raises(ConfigError, match=r"search\.mmr_lambda"):
            load_config(overrides={"search": {"mmr_lambda": 2}})

    def test_sections_validate_on_construction(self):
        with pytest.raises(ValidationError):
            RetentionConfig(delete_threshold=0.6)
        with pytest.raises(ValidationError):
            GraphConfig(centrality_method="pagerank")
        assert RetentionConfig(max_access_boost=1.5).keep_threshold == 0.3

    def test_empty_env_is_unset(self, tmp_mnemos_dir, monkeypatch):
        monkeypatch.setenv("MNEMOS_LLM_TIMEOUT", "")
        assert load_config().llm.timeout == 15.0
