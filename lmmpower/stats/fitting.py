"""Model fitting for simulated datasets.

Routes a fit to the appropriate statsmodels estimator:

- gaussian, no random terms: OLS
- binomial, no random terms: GLM with a Binomial family
- gaussian, one random term: MixedLM (REML) with ``groups`` and ``re_formula``
- gaussian, several random terms (crossed or nested): MixedLM with variance
  components over a single all-encompassing group
- binomial with random terms: BinomialBayesMixedGLM (variational Bayes),
  with Wald z-tests from the posterior means and SDs

Every route returns a ``FitResult``. A fit that does not converge raises
``NonconvergentFit``; a variance component at the zero boundary issues a
``StructuralSingularity`` warning and sets ``FitResult.singular``.
"""

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd

from ..errors import DomainError, NonconvergentFit, StructuralSingularity, UnknownTerm

GAUSSIAN = "gaussian"
BINOMIAL = "binomial"
FAMILIES = (GAUSSIAN, BINOMIAL)

INTERCEPT = "intercept"
RESIDUAL = "residual"

# Variance (relative to the residual variance) treated as zero
SINGULAR_TOLERANCE = 1e-4
# Posterior SD of a variational-Bayes variance component treated as zero
SINGULAR_SD_TOLERANCE = 1e-2

# (method, maxiter) attempts for REML fits: cold start, more iterations, fallback optimiser
MIXEDLM_ATTEMPTS = [("lbfgs", 200), ("lbfgs", 1000), ("powell", 2000)]
# statsmodels ConvergenceWarning texts that indicate a variance estimate at the boundary
BOUNDARY_MESSAGES = ("on the boundary", "Hessian matrix")


@dataclass(frozen=True)
class RandomTerm:
    """A random-effect grouping term: ``(1 + slopes | grouping)``."""

    grouping: str
    slopes: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "slopes", tuple(self.slopes))


@dataclass(frozen=True)
class ModelSpec:
    """What to fit: fixed predictors, random terms and family.

    Example:
        >>> ModelSpec(fixed=("genre",), random=(RandomTerm("participant_id"), RandomTerm("item_id")))
    """

    fixed: Tuple[str, ...] = ()
    random: Tuple[RandomTerm, ...] = ()
    family: str = GAUSSIAN
    response: str = "response"

    def __post_init__(self):
        object.__setattr__(self, "fixed", tuple(self.fixed))
        object.__setattr__(self, "random", tuple(RandomTerm(t) if isinstance(t, str) else t for t in self.random))
        if self.family not in FAMILIES:
            raise DomainError(f"Unknown family '{self.family}'. Valid options: {', '.join(FAMILIES)}")
        groupings = [t.grouping for t in self.random]
        if len(set(groupings)) != len(groupings):
            raise DomainError(f"Each grouping may appear in only one random term, got {groupings}")


@dataclass(frozen=True, eq=False)
class FitResult:
    """Estimates read back from a fitted model.

    Attributes:
        coefficients: One row per fixed term (``"intercept"`` and the
            predictor names) with columns ``estimate``, ``std_error``,
            ``statistic`` and ``p_value``.
        converged: Whether the optimiser reported convergence.
        singular: Whether a variance component sits at the zero boundary.
        variance_components: Estimated standard deviations, keyed
            ``"<grouping>:<effect>"`` plus ``"residual"`` where defined.
        method: Estimator used (``"ols"``, ``"glm"``, ``"mixedlm"``, ...).
        n_obs: Number of observations fitted.
    """

    coefficients: pd.DataFrame
    converged: bool
    singular: bool
    variance_components: Dict[str, float] = field(default_factory=dict)
    method: str = "unknown"
    n_obs: int = 0

    def _row(self, term: str) -> pd.Series:
        if term not in self.coefficients.index:
            raise UnknownTerm(f"Term '{term}' not in fit. Available: {', '.join(self.coefficients.index)}")
        return self.coefficients.loc[term]

    def estimate(self, term: str) -> float:
        return float(self._row(term)["estimate"])

    def std_error(self, term: str) -> float:
        return float(self._row(term)["std_error"])

    def p_value(self, term: str) -> float:
        return float(self._row(term)["p_value"])


class Decision(NamedTuple):
    """Decision statistic of one repetition."""

    p_value: float
    singular: bool = False


class TermPValue:
    """Decision-statistic extractor: fit *model* and return the p-value of *term*.

    Instances are plain picklable objects, so they can be shipped to worker
    processes.
    """

    def __init__(self, model: ModelSpec, term: str):
        self.model = model
        self.term = term

    def __call__(self, design) -> Decision:
        fit = fit_model(design, self.model, warn_singular=False)
        return Decision(fit.p_value(self.term), fit.singular)

    def __repr__(self):
        return f"TermPValue(term={self.term!r}, family={self.model.family!r})"


def _term_column(design, name: str) -> str:
    """Column (or patsy product) holding the numeric values of predictor *name*."""
    if ":" in name:
        return ":".join(_term_column(design, part) for part in name.split(":"))
    factor = design.factor(name)
    if factor is not None:
        return factor.code_column
    # Validates that the column exists and is numeric
    design.predictor_values(name)
    return name


def _fixed_formula(design, model: ModelSpec) -> Tuple[str, Dict[str, str]]:
    """Patsy formula for the fixed part and a map from statsmodels names to term names."""
    names = {"Intercept": INTERCEPT}
    columns = []
    for predictor in model.fixed:
        col = _term_column(design, predictor)
        columns.append(col)
        names[col] = predictor
    rhs = " + ".join(columns) if columns else "1"
    return f"{model.response} ~ {rhs}", names


def _vc_formulas(design, model: ModelSpec) -> Dict[str, str]:
    vc = {}
    for term in model.random:
        design.level_ids(term.grouping)
        vc[f"{term.grouping}:{INTERCEPT}"] = f"0 + C({term.grouping})"
        for slope in term.slopes:
            vc[f"{term.grouping}:{slope}"] = f"0 + C({term.grouping}):{_term_column(design, slope)}"
    return vc


def _coef_frame(params, bse, stats, pvalues, names: Dict[str, str]) -> pd.DataFrame:
    frame = pd.DataFrame(
        {
            "estimate": np.asarray(params, dtype=float),
            "std_error": np.asarray(bse, dtype=float),
            "statistic": np.asarray(stats, dtype=float),
            "p_value": np.asarray(pvalues, dtype=float),
        },
        index=[names.get(n, n) for n in params.index],
    )
    frame.index.name = "term"
    return frame


def _estimation_problem(caught) -> Optional[str]:
    """Describe the first perfect-separation or convergence warning in *caught*."""
    from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationWarning

    for w in caught:
        if issubclass(w.category, (PerfectSeparationWarning, ConvergenceWarning)):
            return f"{w.category.__name__}: {w.message}"
    return None


def _boundary_warning(caught) -> bool:
    """Whether MixedLM reported a boundary MLE or a non-positive-definite Hessian."""
    from statsmodels.tools.sm_exceptions import ConvergenceWarning

    return any(
        issubclass(w.category, ConvergenceWarning) and any(m in str(w.message) for m in BOUNDARY_MESSAGES)
        for w in caught
    )


def _underidentified(design, model: ModelSpec) -> bool:
    """Whether some grouping has no more rows per level-instance than random effects."""
    for term in model.random:
        rows = design.table.groupby(term.grouping).size()
        if rows.max() <= 1 + len(term.slopes):
            return True
    return False


def fit_model(
design, model: ModelSpec, warn_singular: bool = True) -> FitResult:
    """Fit *model* to a design with a populated response column.

    Args:
        design: A ``Design`` whose table has the response column.
        model: Fixed predictors, random terms and family.
        warn_singular: Issue ``StructuralSingularity`` for boundary fits.

    Returns:
        A ``FitResult``.

    Raises:
        NonconvergentFit: If the estimator does not converge.
        DomainError: If the model names unknown predictors or groupings, or
            the response column is missing.
    """
    if model.response not in design.table.columns:
        raise DomainError(f"Design has no '{model.response}' column; run synthesize() first")

    if model.family == GAUSSIAN and not model.random:
        result = _fit_ols(design, model)
    elif model.family == BINOMIAL and not model.random:
        result = _fit_glm(design, model)
    elif model.family == GAUSSIAN:
        result = _fit_mixedlm(design, model)
    else:
        result = _fit_binomial_glmm(design, model)

    if result.singular and warn_singular:
        warnings.warn(
            f"Singular fit ({result.method}): at least one variance component is at the zero boundary. "
            "The corresponding random effect is not identifiable from these data.",
            StructuralSingularity,
            stacklevel=2,
        )
    return result


def _fit_ols(design, model: ModelSpec) -> FitResult:
    import statsmodels.formula.api as smf

    formula, names = _fixed_formula(design, model)
    res = smf.ols(formula, data=design.table).fit()
    return FitResult(
        coefficients=_coef_frame(res.params, res.bse, res.tvalues, res.pvalues, names),
        converged=True,
        singular=False,
        variance_components={RESIDUAL: float(np.sqrt(res.scale))},
        method="ols",
        n_obs=int(res.nobs),
    )


def _fit_glm(design, model: ModelSpec) -> FitResult:
    import statsmodels.api as sm
    import statsmodels.formula.api as smf

    formula, names = _fixed_formula(design, model)
    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            res = smf.glm(formula, data=design.table, family=sm.families.Binomial()).fit()
    except Exception as e:
        raise NonconvergentFit(f"GLM fit failed: {type(e).__name__}: {e}", method="glm") from e

    problem = _estimation_problem(caught)
    if problem is not None:
        raise NonconvergentFit(f"GLM estimates are not identified: {problem}", method="glm")
    if not getattr(res, "converged", True):
        raise NonconvergentFit("GLM did not converge", method="glm")

    return FitResult(
        coefficients=_coef_frame(res.params, res.bse, res.tvalues, res.pvalues, names),
        converged=True,
        singular=False,
        method="glm",
        n_obs=int(res.nobs),
    )


def _fit_mixedlm(design, model: ModelSpec) -> FitResult:
    import statsmodels.formula.api as smf

    formula, names = _fixed_formula(design, model)
    table = design.table

    if len(model.random) == 1:
        term = model.random[0]
        slope_cols = [_term_column(design, s) for s in term.slopes]
        re_formula = "~" + " + ".join(["1"] + slope_cols)
        md = smf.mixedlm(formula, data=table, groups=table[term.grouping], re_formula=re_formula)
        method = "mixedlm"
    else:
        # Crossed or nested terms: variance components within one group
        md = smf.mixedlm(
            formula,
            data=table,
            groups=np.ones(len(table)),
            re_formula="0",
            vc_formula=_vc_formulas(design, model),
        )
        method = "mixedlm_vc"

    result = None
    failure_reason = None
    for fit_method, max_iter in MIXEDLM_ATTEMPTS:
        try:
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always")
                candidate = md.fit(reml=True, method=fit_method, maxiter=max_iter)
        except (np.linalg.LinAlgError, ValueError, OverflowError) as e:
            failure_reason = f"{type(e).__name__}: {e}"
            continue

        if not getattr(candidate, "converged", True):
            failure_reason = "Model did not converge"
            continue
        result, fit_warnings = candidate, caught
        break

    if result is None:
        raise NonconvergentFit(failure_reason or "Unknown convergence failure", method=method)

    fe_names = result.fe_params.index
    scale = float(result.scale)
    components: Dict[str, float] = {}
    variances: List[float] = []

    if len(model.random) == 1:
        term = model.random[0]
        effect_names = [INTERCEPT] + list(term.slopes)
        cov_re = np.atleast_2d(np.asarray(result.cov_re, dtype=float))
        for j, effect in enumerate(effect_names[: cov_re.shape[0]]):
            variances.append(cov_re[j, j])
            components[f"{term.grouping}:{effect}"] = float(np.sqrt(max(cov_re[j, j], 0.0)))
    else:
        for name, var in zip(md.exog_vc.names, np.asarray(result.vcomp, dtype=float)):
            variances.append(var)
            components[name] = float(np.sqrt(max(var, 0.0)))
    components[RESIDUAL] = float(np.sqrt(scale))

    with np.errstate(invalid="ignore"):
        bse_re = np.asarray(result.bse_re, dtype=float)
    singular = (
        any(v <= SINGULAR_TOLERANCE * max(scale, 1e-12) for v in variances)
        or _boundary_warning(fit_warnings)
        or _underidentified(design, model)
        or not np.all(np.isfinite(bse_re))
    )

    return FitResult(
        coefficients=_coef_frame(
            result.fe_params,
            result.bse_fe,
            result.tvalues[fe_names],
            result.pvalues[fe_names],
            names,
        ),
        converged=True,
        singular=singular,
        variance_components=components,
        method=method,
        n_obs=int(result.nobs),
    )


def _fit_binomial_glmm(design, model: ModelSpec) -> FitResult:
    from scipy.stats import norm
    from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM

    formula, names = _fixed_formula(design, model)
    vc = _vc_formulas(design, model)

    try:
        md = BinomialBayesMixedGLM.from_formula(formula, vc, design.table)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = md.fit_vb()
    except (np.linalg.LinAlgError, ValueError, OverflowError) as e:
        raise NonconvergentFit(f"GLMM fit failed: {type(e).__name__}: {e}", method="bayes_glmm") from e

    problem = _estimation_problem(caught)
    if problem is not None:
        raise NonconvergentFit(f"Variational Bayes fit did not converge: {problem}", method="bayes_glmm")
    optim = getattr(result, "optim_retvals", None)
    if not getattr(optim, "success", True):
        raise NonconvergentFit("Variational Bayes fit did not converge", method="bayes_glmm")

    fe_mean = pd.Series(np.asarray(result.fe_mean, dtype=float), index=md.fep_names)
    fe_sd = np.asarray(result.fe_sd, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        z = fe_mean.to_numpy() / fe_sd
    p = 2.0 * norm.sf(np.abs(z))

    vc_sd = np.exp(np.asarray(result.vcp_mean, dtype=float))
    components = {name: float(sd) for name, sd in zip(md.vcp_names, vc_sd)}

    return FitResult(
        coefficients=_coef_frame(fe_mean, fe_sd, z, p, names),
        converged=True,
        singular=bool(np.any(vc_sd <= SINGULAR_SD_TOLERANCE)),
        variance_components=components,
        method="bayes_glmm",
        n_obs=len(design.table),
    )


def anova_table(design, predictors, response: str = "response", typ: int = 2) -> pd.DataFrame:
    """ANOVA table of an OLS fit of *response* on *predictors*.

    Rows are named by predictor (plus ``"Residual"``).
    """
    import statsmodels.api as sm
    import statsmodels.formula.api as smf

    model = ModelSpec(fixed=tuple(predictors), response=response)
    formula, names = _fixed_formula(design, model)
    res = smf.ols(formula, data=design.table).fit()
    table = sm.stats.anova_lm(res, typ=typ)
    table.index = [names.get(n, n) for n in table.index]
    return table
