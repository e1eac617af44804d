"""
Utility Functions and Logging Configuration
============================================

This module provides helper functions for:
- Logging setup and management
- Configuration file loading
- Memory monitoring
- Checkpoint I/O for normalized expression data
- Random seed setting for reproducibility

Author: Alfred3005
"""

import logging
import os
import sys
import gc
import random
from pathlib import Path
from typing import Dict, Any, Optional, Union

import yaml
import psutil
import numpy as np
import pandas as pd


LOGGER_NAME = "AutoAb_Pipeline"


class InvalidArgumentError(ValueError):
    """Raised when a configuration value names an unsupported option."""


def setup_logging(
    log_file: Optional[str] = None,
    log_level: str = "INFO",
    console_output: bool = True
) -> logging.Logger:
    """
    Configure logging for the pipeline.

    Parameters
    ----------
    log_file : str, optional
        Path to log file. If None, logs only to console.
    log_level : str, default "INFO"
        Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    console_output : bool, default True
        Whether to output logs to console

    Returns
    -------
    logging.Logger
        Configured logger instance

    Examples
    --------
    >>> logger = setup_logging(log_file="results/reports/pipeline.log")
    >>> logger.info("Pipeline started")
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers
    logger.handlers = []

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, log_level.upper()))
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file is not None:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load YAML configuration file.

    Parameters
    ----------
    config_path : str or Path
        Path to YAML configuration file

    Returns
    -------
    dict
        Configuration dictionary

    Examples
    --------
    >>> config = load_config("config/analysis_params.yaml")
    >>> print(config['filtering']['min_cpm'])
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)

    if config is None:
        config = {}

    return config


def require_keys(section: Dict[str, Any], keys, section_name: str) -> None:
    """
    Check that a configuration section carries every key in `keys`.

    Raises
    ------
    KeyError
        Listing all missing keys of the section
    """
    missing = [k for k in keys if k not in section]
    if missing:
        raise KeyError(
            f"Configuration section '{section_name}' is missing keys: "
            f"{', '.join(missing)}"
        )


def set_random_seeds(seed: int = 42) -> None:
    """
    Set random seeds for reproducibility.

    Sets seeds for:
    - Python random module
    - NumPy

    Parameters
    ----------
    seed : int, default 42
        Random seed value
    """
    random.seed(seed)
    np.random.seed(seed)

    os.environ['PYTHONHASHSEED'] = str(seed)


def get_memory_usage() -> Dict[str, float]:
    """
    Get current memory usage statistics.

    Returns
    -------
    dict
        Dictionary with memory statistics:
        - ram_used_gb: RAM used in GB
        - ram_available_gb: Available RAM in GB
        - ram_percent: RAM usage percentage
        - process_rss_gb: Resident memory of this process in GB
    """
    memory = psutil.virtual_memory()
    process = psutil.Process(os.getpid())

    return {
        'ram_used_gb': memory.used / (1024 ** 3),
        'ram_available_gb': memory.available / (1024 ** 3),
        'ram_percent': memory.percent,
        'process_rss_gb': process.memory_info().rss / (1024 ** 3)
    }


def log_memory_usage(logger: logging.Logger) -> None:
    """
    Log current memory usage.

    Parameters
    ----------
    logger : logging.Logger
        Logger instance
    """
    mem = get_memory_usage()

    logger.info(
        f"Memory usage - RAM: {mem['ram_used_gb']:.2f} GB "
        f"({mem['ram_percent']:.1f}%), "
        f"Available: {mem['ram_available_gb']:.2f} GB, "
        f"Process: {mem['process_rss_gb']:.2f} GB"
    )


def cleanup_memory(logger: Optional[logging.Logger] = None) -> None:
    """Run garbage collection."""
    gc.collect()

    if logger is not None:
        logger.debug("Memory cleanup performed (gc)")


def ensure_dir(path: Union[str, Path]) -> Path:
    """
    Create directory if it doesn't exist.

    Parameters
    ----------
    path : str or Path
        Directory path

    Returns
    -------
    Path
        Path object of the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def expression_frame(adata, layer: Optional[str] = None):
    """
    Return an AnnData matrix as a genes x samples DataFrame.

    Parameters
    ----------
    adata : AnnData
        Samples x genes object
    layer : str, optional
        Layer to use instead of ``adata.X``

    Returns
    -------
    pd.DataFrame
        Genes (rows) x samples (columns)
    """
    matrix = adata.layers[layer] if layer is not None else adata.X
    if hasattr(matrix, "toarray"):
        matrix = matrix.toarray()

    return pd.DataFrame(
        np.asarray(matrix, dtype=np.float64).T,
        index=adata.var_names.copy(),
        columns=adata.obs_names.copy()
    )


def save_checkpoint(
    adata,
    filepath: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Save an AnnData checkpoint as gzip-compressed H5AD.

    Parameters
    ----------
    adata : AnnData
        Object to save
    filepath : str or Path
        Path to save checkpoint
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    Path
        Path of the written file

    Examples
    --------
    >>> save_checkpoint(adata, "results/checkpoints/normalized.h5ad", logger)
    """
    filepath = Path(filepath)
    ensure_dir(filepath.parent)

    adata.write_h5ad(filepath, compression='gzip')

    if logger is not None:
        logger.info(f"Checkpoint saved: {filepath}")

    return filepath


def load_checkpoint(
    filepath: Union[str, Path],
    logger: Optional[logging.Logger] = None
):
    """
    Load an H5AD checkpoint.

    Parameters
    ----------
    filepath : str or Path
        Path to checkpoint file
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Loaded object
    """
    import anndata

    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"Checkpoint not found: {filepath}")

    adata = anndata.read_h5ad(filepath)

    if logger is not None:
        logger.info(f"Checkpoint loaded: {filepath}")

    return adata
