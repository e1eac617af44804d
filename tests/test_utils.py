import logging

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from autoab_pipeline.utils import (
    InvalidArgumentError,
    LOGGER_NAME,
    expression_frame,
    load_checkpoint,
    load_config,
    require_keys,
    save_checkpoint,
    setup_logging,
)


def test_load_config(tmp_path):
    path = tmp_path / "params.yaml"
    path.write_text("filtering:\n  min_cpm: 1.0\n  min_lib_perc: 0.1\n")

    config = load_config(path)
    assert config["filtering"]["min_lib_perc"] == 0.1

    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    assert load_config(empty) == {}


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_require_keys_lists_all_missing():
    with pytest.raises(KeyError, match="accession, subfields"):
        require_keys({"count_filename": "x"}, ["accession", "count_filename", "subfields"], "geo")

    require_keys({"a": 1}, ["a"], "section")


def test_invalid_argument_is_value_error():
    assert issubclass(InvalidArgumentError, ValueError)


def test_setup_logging_file(tmp_path):
    log_file = tmp_path / "logs" / "pipeline.log"
    logger = setup_logging(log_file=str(log_file), log_level="DEBUG", console_output=False)
    logger.info("Pipeline started")

    for handler in logger.handlers:
        handler.flush()

    assert logger.name == LOGGER_NAME
    assert logger.level == logging.DEBUG
    assert "Pipeline started" in log_file.read_text()

    for handler in list(logger.handlers):
        handler.close()
    logger.handlers = []


def test_expression_frame_and_checkpoint(tmp_path):
    adata = ad.AnnData(
        X=np.arange(6, dtype=np.float64).reshape(3, 2),
        obs=pd.DataFrame({"receptor_mfi": [1.0, 2.0, 3.0]}, index=["s1", "s2", "s3"]),
        var=pd.DataFrame(index=["CD19", "MS4A1"]),
    )
    adata.layers["counts"] = adata.X * 10

    frame = expression_frame(adata, "counts")
    assert frame.shape == (2, 3)
    assert frame.loc["MS4A1", "s3"] == 50.0

    path = save_checkpoint(adata, tmp_path / "checkpoints" / "normalized.h5ad")
    restored = load_checkpoint(path)
    np.testing.assert_allclose(restored.layers["counts"], adata.layers["counts"])
    assert restored.obs_names.tolist() == ["s1", "s2", "s3"]

    with pytest.raises(FileNotFoundError):
        load_checkpoint(tmp_path / "nothing.h5ad")
