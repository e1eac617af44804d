"""
Autoantibody and RNA-seq Covariate Analysis Pipeline
====================================================

Analysis of an autoantigen microarray immunoglobulin dataset, flow cytometry
marker values and bulk RNA-seq of sorted cells, relating gene expression to
receptor expression intensity.

Modules:
--------
- download: Local tables, GEO series and MSigDB gene sets
- qc: Library size metrics and expression-based gene filtering
- preprocessing: TMM normalization (edgeR), log transformation, gene set scoring
- integration: Batch effect removal
- differential_expression: voom, linear models and empirical Bayes (limma)
- r_utils: rpy2 bridge to the limma and edgeR R packages
- correlation: Pearson tests and reduced major axis regression
- visualization: Scatter plots, volcano plots and clustered heatmaps
- pipeline: End-to-end run and command-line entry point
- utils: Helper functions and logging

Author: Alfred3005
License: MIT
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Alfred3005"

from . import utils
from . import r_utils
from . import download
from . import qc
from . import preprocessing
from . import integration
from . import differential_expression
from . import correlation
from . import visualization
from . import pipeline

__all__ = [
    "utils",
    "r_utils",
    "download",
    "qc",
    "preprocessing",
    "integration",
    "differential_expression",
    "correlation",
    "visualization",
    "pipeline",
]

__description__ = "Autoantibody and RNA-seq Covariate Analysis Pipeline"
