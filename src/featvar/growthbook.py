"""
Conversion of a GrowthBook features payload (the body returned by the
GrowthBook features API) into featvar Features.

Each GrowthBook feature becomes a Feature whose first variant, "<key>:default",
carries the default value and is never gated. Rules are turned into variants
prioritized by their position, so the first applicable rule wins as it does
in GrowthBook.
"""

from __future__ import annotations
import os
import json
import logging
import jsonschema
from typing import Any

from . import Allocation, Feature, Filter, Namespace, Range, RangeType, Variant
from ._hashing import HashVersion

logger = logging.getLogger(__name__)

PROVIDER_NAME = "GrowthBook"

with open(os.path.join(os.path.dirname(__file__), "growthbook_schema.json")) as f:
    _payload_schema = json.load(f)


def _equal_weights(n: int) -> list[float]:
    if n < 1:
        return []
    return [1 / n] * n


def _clamp(x: float) -> float:
    return max(0.0, min(1.0, x))


def bucket_ranges(n: int, coverage: float = 1, weights: list[float] | None = None) -> list[tuple[float, float]]:
    """
    Split the unit interval into n consecutive buckets sized by the weights,
    each shrunk to the coverage. Weights that do not add up to 1 are replaced
    by equal weights.
    """
    coverage = _clamp(coverage)
    equal = _equal_weights(n)
    if weights is None or len(weights) != n:
        weights = equal
    total = sum(weights)
    if total < 0.99 or total > 1.01:
        weights = equal

    ranges = []
    cumulative = 0.0
    for w in weights:
        start = cumulative
        cumulative += w
        ranges.append((_clamp(start), _clamp(start + coverage * w)))
    return ranges


def _filters(condition: dict[str, Any] | None) -> list[Filter]:
    if not condition:
        return []
    filters = []
    combined = {}
    for prop, value in condition.items():
        if prop.startswith("$"):
            combined[prop] = value
        else:
            filters.append(Filter(prop, [value]))
    if combined:
        filters.append(Filter(None, [combined]))
    return filters


def _hash_version(rule: dict[str, Any]) -> HashVersion:
    return HashVersion.V1 if rule.get("hashVersion") == 1 else HashVersion.V2


def _namespace(rule: dict[str, Any]) -> Namespace | None:
    ns = rule.get("namespace")
    if ns is None:
        return None
    return Namespace(ns[0], ns[1], ns[2])


def _force_allocation(rule: dict[str, Any]) -> Allocation | None:
    if "range" in rule:
        start, end = rule["range"]
        return Allocation(Range(start, end, RangeType.INCLUDE_START))
    if "coverage" in rule:
        return Allocation.percentage(_clamp(rule["coverage"]) * 100)
    return None


def _rule_variants(key: str, idx: int, rule: dict[str, Any]) -> list[Variant]:
    common = dict(
        filters=_filters(rule.get("condition")),
        priority=idx,
        allocation_unit=rule.get("hashAttribute", "id"),
        salt=rule.get("seed") or rule.get("key") or key,
        hash_version=_hash_version(rule),
        namespace=_namespace(rule),
    )

    if "force" in rule:
        return [
            Variant(
                f"{key}:rule{idx}",
                allocation=_force_allocation(rule),
                configuration=rule["force"],
                **common,
            )
        ]

    variations = rule.get("variations")
    if not variations:
        logger.debug("skipping rule %d of %s without force or variations", idx, key)
        return []

    ranges = rule.get("ranges")
    if ranges is None or len(ranges) != len(variations):
        ranges = bucket_ranges(len(variations), rule.get("coverage", 1), rule.get("weights"))
    meta = rule.get("meta") or []
    experiment = rule.get("key") or key

    variants = []
    for i, (variation, (start, end)) in enumerate(zip(variations, ranges)):
        m = meta[i] if i < len(meta) else {}
        variants.append(
            Variant(
                f"{experiment}:{m.get('key', i)}",
                allocation=Allocation(Range(start, end, RangeType.INCLUDE_START)),
                configuration=variation,
                **common,
            )
        )
    return variants


def features_from_growthbook(payload: dict[str, Any] | str | bytes) -> list[Feature]:
    """
    Convert the GrowthBook features payload into Features. The payload is
    validated first and a jsonschema.ValidationError is raised if it does not
    have the expected shape.
    """
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    jsonschema.validate(payload, _payload_schema)

    features = []
    for key, gb in payload["features"].items():
        variants = [Variant(f"{key}:default", configuration=gb.get("defaultValue"))]
        seen = {variants[0].id}
        for idx, rule in enumerate(gb.get("rules", [])):
            for v in _rule_variants(key, idx, rule):
                if v.id in seen:
                    logger.warning("duplicate variant %s in GrowthBook feature %s, keeping the first", v.id, key)
                    continue
                seen.add(v.id)
                variants.append(v)
        features.append(
            Feature(
                key,
                variants,
                salt=key,
                allocation_unit="id",
                provider_name=PROVIDER_NAME,
            )
        )
    return features
