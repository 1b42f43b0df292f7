"""
Site inputs and step-0 preprocessing.

A site is handed either already-numeric covariates/response arrays, or
per-subject records (covariate tags plus parsed measurements). Preprocessing
validates the feature selection, builds the covariate matrix from the tags,
appends the bias column and picks the response from the first selected
feature.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .blocks.aux import ValidationError

Array = np.ndarray

BIAS_LABEL = "bias"

# FreeSurfer aseg.stats measures accepted as response features.
FREESURFER_FIELDS: Tuple[str, ...] = (
    "BrainSegVol",
    "BrainSegVolNotVent",
    "CortexVol",
    "lhCortexVol",
    "rhCortexVol",
    "CorticalWhiteMatterVol",
    "lhCorticalWhiteMatterVol",
    "rhCorticalWhiteMatterVol",
    "SubCortGrayVol",
    "TotalGrayVol",
    "SupraTentorialVol",
    "MaskVol",
    "EstimatedTotalIntraCranialVol",
    "Left-Lateral-Ventricle",
    "Right-Lateral-Ventricle",
    "Left-Thalamus-Proper",
    "Right-Thalamus-Proper",
    "Left-Caudate",
    "Right-Caudate",
    "Left-Putamen",
    "Right-Putamen",
    "Left-Pallidum",
    "Right-Pallidum",
    "Left-Hippocampus",
    "Right-Hippocampus",
    "Left-Amygdala",
    "Right-Amygdala",
    "Left-Accumbens-area",
    "Right-Accumbens-area",
    "Brain-Stem",
    "CSF",
)


@dataclass
class SubjectRecord:
    """One subject: covariate tags and the measurements parsed from its file."""

    tags: Dict[str, Any]
    measures: Dict[str, float]


@dataclass
class SiteInputs:
    """
    Everything a site is configured with.

    Provide either ``records`` or ``covariates`` + ``response``. ``lambda_``
    and ``eta`` of None defer to the run configuration.
    """

    features: Sequence[str]
    records: Optional[Sequence[SubjectRecord]] = None
    covariates: Optional[Any] = None
    response: Optional[Any] = None
    covariate_labels: Optional[Sequence[str]] = None
    valid_fields: Optional[Sequence[str]] = FREESURFER_FIELDS
    eta: Optional[float] = None
    lambda_: Optional[float] = None


@dataclass
class PreparedData:
    """Private, preprocessed site data. Never leaves the site."""

    biased_x: Array
    y: Array
    covariate_labels: Tuple[str, ...] = field(default_factory=tuple)
    response_label: str = ""

    @property
    def num_features(self) -> int:
        return int(self.biased_x.shape[1])

    @property
    def local_count(self) -> int:
        return int(self.y.shape[0])


def add_bias(rows) -> Array:
    """Append a constant 1 column to a non-empty list of rows."""
    if rows is None or len(rows) == 0:
        raise ValidationError(f"Expected {rows!r} to be a non-empty sequence of rows")
    if isinstance(rows, np.ndarray):
        if rows.ndim != 2:
            raise ValidationError(f"Expected a 2-D covariate matrix, got shape {rows.shape}")
        X = rows.astype(float)
    else:
        if not all(isinstance(r, (list, tuple, np.ndarray)) for r in rows):
            raise ValidationError(f"Expected every item of {rows!r} to be a row")
        lengths = {len(r) for r in rows}
        if len(lengths) != 1:
            raise ValidationError(
                f"Covariate rows have differing lengths: {sorted(lengths)}",
                {"row_lengths": sorted(lengths)},
            )
        X = np.asarray(rows, dtype=float).reshape(len(rows), -1)
    return np.hstack([X, np.ones((X.shape[0], 1))])


def normalized_tags(tags: Mapping[str, Any]) -> Tuple[List[str], List[float]]:
    """
    Numeric covariates from a tag dict, in sorted tag order.

    Booleans become +1/-1, numbers pass through, anything else is dropped.
    """
    labels: List[str] = []
    values: List[float] = []
    for name in sorted(tags):
        value = tags[name]
        if isinstance(value, bool):
            labels.append(name)
            values.append(1.0 if value else -1.0)
        elif isinstance(value, (int, float, np.integer, np.floating)):
            labels.append(name)
            values.append(float(value))
    return labels, values


def validate_features(features, valid_fields: Optional[Sequence[str]]) -> List[str]:
    if isinstance(features, str) or not isinstance(features, (list, tuple)) or not features:
        raise ValidationError(
            "Expected inputs containing features", {"features": features}
        )
    if valid_fields is not None:
        unknown = [f for f in features if f not in valid_fields]
        if unknown:
            raise ValidationError(
                f"Unknown FreeSurfer region in inputs: {', '.join(map(str, unknown))}",
                {"features": list(features), "unknown": unknown},
            )
    return list(features)


def prepare_site_data(inputs: SiteInputs) -> PreparedData:
    """Step 0: validate features, build biased X and y."""
    features = validate_features(inputs.features, inputs.valid_fields)
    response_label = features[0]

    if inputs.records is not None:
        if len(inputs.records) == 0:
            raise ValidationError("Site has no subject records")
        labels: Optional[List[str]] = None
        rows, y = [], []
        for i, rec in enumerate(inputs.records):
            rec_labels, values = normalized_tags(rec.tags)
            if labels is None:
                labels = rec_labels
            elif rec_labels != labels:
                raise ValidationError(
                    f"Subject {i} has covariates {rec_labels}, expected {labels}",
                    {"subject": i},
                )
            if response_label not in rec.measures:
                raise ValidationError(
                    f"Subject {i} has no measurement for '{response_label}'",
                    {"subject": i, "feature": response_label},
                )
            rows.append(values)
            y.append(float(rec.measures[response_label]))
        biased_x = add_bias(rows)
        covariate_labels = tuple(labels or ())
    elif inputs.covariates is not None and inputs.response is not None:
        biased_x = add_bias(inputs.covariates)
        y = inputs.response
        n_cov = biased_x.shape[1] - 1
        covariate_labels = tuple(
            inputs.covariate_labels
            if inputs.covariate_labels is not None
            else (f"x{j}" for j in range(n_cov))
        )
        if len(covariate_labels) != n_cov:
            raise ValidationError(
                f"{len(covariate_labels)} covariate labels for {n_cov} covariates"
            )
    else:
        raise ValidationError("Site inputs need either records or covariates and response")

    y = np.asarray(y, dtype=float).ravel()
    if y.shape[0] != biased_x.shape[0]:
        raise ValidationError(
            f"Response has {y.shape[0]} values for {biased_x.shape[0]} rows",
            {"n_rows": int(biased_x.shape[0]), "n_response": int(y.shape[0])},
        )
    return PreparedData(
        biased_x=biased_x,
        y=y,
        covariate_labels=covariate_labels + (BIAS_LABEL,),
        response_label=response_label,
    )
