"""multibootstrap — Cluster bootstrap for multinomial logistic regression.

Resamples subjects (not records) of a repeated-measures data set,
refits a multinomial logit on each resample until ``B`` fits converge,
and reports percentile coefficient intervals, pairwise level
comparisons merged across reference levels, and delta-method
intervals for predicted probabilities.

Public API:
    .. autosummary::
        multi_bootstrap
        generate_bootstrap_datasets
        cluster_resample
        recommended_n_sets
        BootstrapOrchestrator
        MNLogitFitter
        ModelFitter
        GuardedFitter
        guarded_fit
        escalated_warnings
        aggregate_coefficients
        make_profiles
        predict_probabilities
        combine_reference_fits
        merge_comparisons
        save_datasets
        load_datasets
        save_result
        save_tables
        print_bootstrap_summary
        print_comparison_table
        print_failure_log
        print_probability_table
        get_n_jobs
        set_n_jobs
        get_default_n_boot
        set_default_n_boot
        RunLog
        BootstrapResult
        CoefficientDistribution
        FitAttempt
        FittedModel
        MultiBootstrapResult
        ReferenceFit
"""

from ._config import (
    DEFAULT_N_BOOT,
    MIN_RECOMMENDED_BOOT,
    get_default_n_boot,
    get_n_jobs,
    set_default_n_boot,
    set_n_jobs,
)
from ._context import RunLog
from ._errors import (
    AggregationError,
    FitFailure,
    MultiBootstrapError,
    OriginalFitFailure,
    ResampleInputError,
)
from ._results import (
    AttemptStatus,
    BootstrapResult,
    CoefficientDistribution,
    FailureReason,
    FitAttempt,
    FittedModel,
    MultiBootstrapResult,
    ReferenceFit,
    SearchState,
)
from .aggregation import aggregate_coefficients
from .core import multi_bootstrap
from .display import (
    print_bootstrap_summary,
    print_comparison_table,
    print_failure_log,
    print_probability_table,
)
from .engine import BootstrapOrchestrator
from .fitting import (
    GuardedFitter,
    MNLogitFitter,
    ModelFitter,
    escalated_warnings,
    guarded_fit,
)
from .persistence import load_datasets, save_datasets, save_result, save_tables
from .probabilities import (
    combine_reference_fits,
    make_profiles,
    merge_comparisons,
    predict_probabilities,
)
from .resampling import (
    cluster_resample,
    generate_bootstrap_datasets,
    recommended_n_sets,
)

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_N_BOOT",
    "MIN_RECOMMENDED_BOOT",
    "AggregationError",
    "AttemptStatus",
    "BootstrapOrchestrator",
    "BootstrapResult",
    "CoefficientDistribution",
    "FailureReason",
    "FitAttempt",
    "FitFailure",
    "FittedModel",
    "GuardedFitter",
    "MNLogitFitter",
    "ModelFitter",
    "MultiBootstrapError",
    "MultiBootstrapResult",
    "OriginalFitFailure",
    "ReferenceFit",
    "ResampleInputError",
    "RunLog",
    "SearchState",
    "aggregate_coefficients",
    "cluster_resample",
    "combine_reference_fits",
    "escalated_warnings",
    "generate_bootstrap_datasets",
    "get_default_n_boot",
    "get_n_jobs",
    "guarded_fit",
    "load_datasets",
    "make_profiles",
    "merge_comparisons",
    "multi_bootstrap",
    "predict_probabilities",
    "print_bootstrap_summary",
    "print_comparison_table",
    "print_failure_log",
    "print_probability_table",
    "recommended_n_sets",
    "save_datasets",
    "save_result",
    "save_tables",
    "set_default_n_boot",
    "set_n_jobs",
]
