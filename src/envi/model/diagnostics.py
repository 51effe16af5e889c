"""
diagnostics.py - Prediction diagnostics for cross-validated surfaces

Discrimination of presence versus absence by the held-out log relative
risk: area under the ROC curve (per fold and pooled) and the
precision-recall curve.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from sklearn.metrics import average_precision_score, precision_recall_curve, roc_auc_score, roc_curve

from .crossval import CrossValidationResult


@dataclass
class CVDiagnostics:
    """
    Discrimination metrics of a cross-validation run.

    Attributes
    ----------
    fold_auc : np.ndarray
        ROC-AUC per fold (NaN for folds containing one class only)
    mean_auc, sd_auc : float
        Mean and standard deviation of the fold AUCs
    ci_auc : tuple of float
        Normal 95% interval of the mean fold AUC
    pooled_auc : float
        ROC-AUC of all held-out predictions pooled
    average_precision : float
        Area under the pooled precision-recall curve
    prevalence : float
        Proportion of presences among the pooled held-out points
    roc : dict
        Pooled ROC curve: 'fpr', 'tpr', 'thresholds'
    pr : dict
        Pooled precision-recall curve: 'precision', 'recall', 'thresholds'
    """

    fold_auc: np.ndarray
    mean_auc: float
    sd_auc: float
    ci_auc: tuple[float, float]
    pooled_auc: float
    average_precision: float
    prevalence: float
    roc: dict
    pr: dict

    def summary(self) -> dict:
        return {
            "n_folds": len(self.fold_auc),
            "mean_auc": self.mean_auc,
            "sd_auc": self.sd_auc,
            "ci_auc": self.ci_auc,
            "pooled_auc": self.pooled_auc,
            "average_precision": self.average_precision,
            "prevalence": self.prevalence,
        }

    def __repr__(self) -> str:
        return (
            f"CVDiagnostics(folds={len(self.fold_auc)}, mean_auc={self.mean_auc:.3f}, "
            f"pooled_auc={self.pooled_auc:.3f}, ap={self.average_precision:.3f})"
        )


def _auc(labels: np.ndarray, scores: np.ndarray) -> float:
    if len(np.unique(labels)) < 2:
        return np.nan
    return float(roc_auc_score(labels, scores))


def cv_diagnostics(cv: CrossValidationResult, verbose: bool = False) -> CVDiagnostics:
    """
    ROC and precision-recall diagnostics of pooled held-out predictions.

    Parameters
    ----------
    cv : CrossValidationResult
        Output of `cross_validate`
    verbose : bool
        Print the headline numbers

    Returns
    -------
    CVDiagnostics
    """
    fold_auc = np.array([_auc(f.labels, f.predictions) for f in cv.folds])
    valid = fold_auc[~np.isnan(fold_auc)]
    mean_auc = float(valid.mean()) if len(valid) else np.nan
    sd_auc = float(valid.std(ddof=1)) if len(valid) > 1 else np.nan
    if len(valid) > 1:
        half = 1.96 * sd_auc / np.sqrt(len(valid))
        ci = (mean_auc - half, mean_auc + half)
    else:
        ci = (np.nan, np.nan)

    labels = cv.labels
    scores = cv.predictions
    if len(np.unique(labels)) == 2:
        fpr, tpr, roc_thr = roc_curve(labels, scores)
        precision, recall, pr_thr = precision_recall_curve(labels, scores)
        pooled_auc = float(roc_auc_score(labels, scores))
        ap = float(average_precision_score(labels, scores))
    else:
        fpr = tpr = roc_thr = precision = recall = pr_thr = np.array([])
        pooled_auc = ap = np.nan

    diag = CVDiagnostics(
        fold_auc=fold_auc,
        mean_auc=mean_auc,
        sd_auc=sd_auc,
        ci_auc=ci,
        pooled_auc=pooled_auc,
        average_precision=ap,
        prevalence=float(labels.mean()) if len(labels) else np.nan,
        roc={"fpr": fpr, "tpr": tpr, "thresholds": roc_thr},
        pr={"precision": precision, "recall": recall, "thresholds": pr_thr},
    )

    if verbose:
        print(f"  ✓ AUC: mean={diag.mean_auc:.3f} (95% CI {ci[0]:.3f}-{ci[1]:.3f}), "
              f"pooled={diag.pooled_auc:.3f}, AP={diag.average_precision:.3f}")
    return diag
