from __future__ import annotations
import re
import logging
import datetime
import dataclasses
import uuid
import dill
import os
import time
import json
import jsonschema
import threading
from abc import abstractmethod
from collections.abc import Iterable, Iterator, Mapping
from collections import defaultdict
from enum import IntFlag
from typing import Any, Literal, TypeAlias
from copy import deepcopy

from prometheus_client import Histogram

from ._conditions import MISSING, NEVER, Condition, ConditionEvaluator, lookup, _to_number
from ._hashing import HashVersion, fnv1a32, get_allocation_spot, in_namespace
from ._versions import Version, compare_versions, try_parse_version
from .errors import FeatvarError, ParseError, RangeError


logger = logging.getLogger(__name__)

AttributeScalar: TypeAlias = None | str | int | float | bool | datetime.datetime | uuid.UUID
AttributeValue: TypeAlias = AttributeScalar | list[AttributeScalar] | tuple[AttributeScalar, ...] | set[AttributeScalar] | frozenset[AttributeScalar]
Attributes: TypeAlias = dict[str, AttributeValue]
DictConfig: TypeAlias = dict[str, Any]
VariantID: TypeAlias = str

_scalar_types = (str, int, float, bool, datetime.datetime, uuid.UUID, type(None))
_array_types = (list, tuple, set, frozenset)


# Data model


class RangeType(IntFlag):
    EXCLUDE_BOTH = 0
    INCLUDE_START = 1
    INCLUDE_END = 2
    INCLUDE_BOTH = 3


_range_re = re.compile(r"\s*([\[(])([^;]*);([^;]*)([\])])\s*")


class Range:
    """
    A range of comparable values with configurable inclusiveness of either
    end.
    """

    __slots__ = ("start", "end", "type")
    start: Any
    end: Any
    type: RangeType

    def __init__(self, start, end, type: RangeType = RangeType.INCLUDE_START):
        try:
            if start > end:
                raise RangeError(f"range start {start!r} is after its end {end!r}")
        except TypeError as e:
            raise RangeError(f"range bounds {start!r} and {end!r} are not comparable") from e
        self.start = start
        self.end = end
        self.type = RangeType(type)

    def __repr__(self) -> str:
        lb = "[" if self.type & RangeType.INCLUDE_START else "("
        rb = "]" if self.type & RangeType.INCLUDE_END else ")"
        return f"Range({lb}{self.start!r}; {self.end!r}{rb})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Range):
            return NotImplemented
        return (self.start, self.end, self.type) == (other.start, other.end, other.type)

    def __hash__(self) -> int:
        return hash((self.start, self.end, self.type))

    @staticmethod
    def parse(s: str, convert=float) -> Range:
        """
        Parse range notation such as "[0; 0.5)". A square bracket includes
        the bound, a parenthesis excludes it. Bounds are converted with
        the given function.
        """
        m = _range_re.fullmatch(s) if isinstance(s, str) else None
        if not m:
            raise RangeError(f"invalid range {s!r}")
        try:
            start = convert(m.group(2).strip())
            end = convert(m.group(3).strip())
        except ValueError as e:
            raise RangeError(f"invalid range {s!r}: {e}") from e
        t = RangeType.EXCLUDE_BOTH
        if m.group(1) == "[":
            t |= RangeType.INCLUDE_START
        if m.group(4) == "]":
            t |= RangeType.INCLUDE_END
        return Range(start, end, t)

    def contains(self, value) -> bool:
        if self.type & RangeType.INCLUDE_START:
            if value < self.start:
                return False
        elif value <= self.start:
            return False
        if self.type & RangeType.INCLUDE_END:
            if value > self.end:
                return False
        elif value >= self.end:
            return False
        return True


def _check_unit_bounds(start: float, end: float, what: str):
    for b in (start, end):
        if isinstance(b, bool) or not isinstance(b, (int, float)) or not 0 <= b <= 1:
            raise RangeError(f"{what} must be a range between 0 and 1, got {start!r}..{end!r}")
    if start > end:
        raise RangeError(f"{what} start {start!r} is after its end {end!r}")


class Allocation:
    """
    The fraction of the identifier space assigned to a variant. An
    identifier is allocated if its spot falls in the range.
    """

    __slots__ = ("range",)
    range: Range

    def __init__(self, range: Range):
        _check_unit_bounds(range.start, range.end, "allocation")
        self.range = range

    def __repr__(self) -> str:
        return f"Allocation({self.range!r})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Allocation):
            return NotImplemented
        return self.range == other.range

    def __hash__(self) -> int:
        return hash(self.range)

    @staticmethod
    def percentage(p: float) -> Allocation:
        if isinstance(p, bool) or not isinstance(p, (int, float)) or not 0 <= p <= 100:
            raise RangeError(f"allocation must be between 0% and 100%, got {p!r}")
        return Allocation(Range(0, p / 100, RangeType.INCLUDE_BOTH))

    @staticmethod
    def parse(s: str) -> Allocation:
        """
        Parse "25%" or range notation such as "[0.25; 0.5)".
        """
        if not isinstance(s, str):
            raise RangeError(f"invalid allocation {s!r}")
        s = s.strip()
        if s.endswith("%"):
            try:
                p = float(s[:-1])
            except ValueError as e:
                raise RangeError(f"invalid allocation {s!r}") from e
            return Allocation.percentage(p)
        return Allocation(Range.parse(s))

    def contains(self, spot: float) -> bool:
        return self.range.contains(spot)


class Namespace:
    """
    A window [start, end) of a named hash space. Variants in the same
    namespace with disjoint windows never share an identifier.
    """

    __slots__ = ("name", "start", "end")
    name: str
    start: float
    end: float

    def __init__(self, name: str, start: float, end: float):
        if not isinstance(name, str) or not name:
            raise RangeError("namespace name must be a non-empty string")
        _check_unit_bounds(start, end, "namespace")
        self.name = name
        self.start = start
        self.end = end

    def __repr__(self) -> str:
        return f"Namespace({self.name!r}, {self.start!r}, {self.end!r})"


class Filter:
    """
    A targeting rule on one property. Conditions are OR'ed: any one of them
    satisfies the filter. Conditions are kept in their source representation
    (or as parsed Condition nodes) and parsed on first evaluation.

    A filter with property_name None applies its conditions to all the
    attributes at once, e.g. {"$or": [{"a": 1}, {"b": 2}]}.
    """

    __slots__ = ("property_name", "conditions")
    property_name: str | None
    conditions: tuple[Any, ...]

    def __init__(self, property_name: str | None, conditions: Iterable[Any] = ()):
        if property_name is not None and (not isinstance(property_name, str) or not property_name):
            raise ValueError("filter property name must be a non-empty string")
        self.property_name = property_name
        self.conditions = tuple(conditions)

    def __repr__(self) -> str:
        return f"Filter({self.property_name!r}, {list(self.conditions)!r})"


class Variant:
    """
    A candidate outcome of a feature. It applies when all of its filters are
    satisfied and the identifier is allocated to it. If several variants
    apply, the one with the lowest priority wins; variants without a priority
    come last and ties go to the variant declared first.

    allocation_unit, salt and hash_version default to those of the feature.
    A variant without allocation and namespace is not gated by identifier.
    """

    __slots__ = (
        "id",
        "filters",
        "allocation",
        "priority",
        "configuration",
        "allocation_unit",
        "salt",
        "hash_version",
        "namespace",
    )
    id: VariantID
    filters: tuple[Filter, ...]
    allocation: Allocation | None
    priority: int | None
    configuration: Any
    allocation_unit: str | None
    salt: str | None
    hash_version: HashVersion | None
    namespace: Namespace | None

    def __init__(
        self,
        id: VariantID,
        filters: Iterable[Filter] = (),
        allocation: Allocation | None = None,
        priority: int | None = None,
        configuration: Any = None,
        *,
        allocation_unit: str | None = None,
        salt: str | None = None,
        hash_version: int | None = None,
        namespace: Namespace | None = None,
    ):
        if not isinstance(id, str) or not id:
            raise ValueError("variant id must be a non-empty string")
        if priority is not None and (isinstance(priority, bool) or not isinstance(priority, int)):
            raise TypeError(f"variant priority must be an int or None, not {type(priority).__name__}")
        self.id = id
        self.filters = tuple(filters)
        self.allocation = allocation
        self.priority = priority
        self.configuration = configuration
        self.allocation_unit = allocation_unit
        self.salt = salt
        self.hash_version = HashVersion(hash_version) if hash_version is not None else None
        self.namespace = namespace

    def __repr__(self) -> str:
        return f"Variant({self.id!r})"


def _priority_key(v: Variant) -> tuple[bool, int]:
    # Variants without priority sort after every variant with one.
    return (v.priority is None, v.priority or 0)


class Feature:
    """
    A named, independently evaluated set of variants.
    """

    __slots__ = (
        "name",
        "variants",
        "allocation_unit",
        "provider_name",
        "hash_version",
        "filters",
        "enabled",
        "metadata",
        "_salt",
        "_by_id",
        "_by_priority",
    )
    name: str
    variants: tuple[Variant, ...]
    allocation_unit: str
    provider_name: str
    hash_version: HashVersion
    filters: tuple[Filter, ...]
    enabled: bool
    metadata: dict[str, Any]

    def __init__(
        self,
        name: str,
        variants: Iterable[Variant] = (),
        *,
        salt: str | None = None,
        allocation_unit: str = "user_id",
        provider_name: str = "",
        hash_version: int = HashVersion.V2,
        filters: Iterable[Filter] = (),
        enabled: bool = True,
        metadata: dict[str, Any] | None = None,
    ):
        if not isinstance(name, str) or not name:
            raise ValueError("feature name must be a non-empty string")
        self.name = name
        self.variants = tuple(variants)
        self.allocation_unit = allocation_unit
        self.provider_name = provider_name
        self.hash_version = HashVersion(hash_version)
        self.filters = tuple(filters)
        self.enabled = enabled
        self.metadata = metadata or {}
        self._salt = salt
        self._by_id = {}
        for v in self.variants:
            if v.id in self._by_id:
                raise ValueError(f"duplicate variant {v.id} in feature {name}")
            self._by_id[v.id] = v
        # sorted() is stable so equal priorities keep declaration order.
        self._by_priority = tuple(sorted(self.variants, key=_priority_key))

    def __repr__(self) -> str:
        return f"Feature({self.name!r})"

    @property
    def salt(self) -> str:
        if self._salt is None:
            # Do not ever change this. Changing it moves every identifier of
            # every running rollout that relies on the default salt.
            return f"{self.provider_name}_{self.name}"
        return self._salt

    def get_variant(self, id: VariantID) -> Variant | None:
        return self._by_id.get(id)


# Context


class ContextReceiver:
    """
    Receives the attributes an AttributeContext reports.
    """

    @abstractmethod
    def receive(self, name: str, value: AttributeValue) -> None: ...


class AttributeContext:
    """
    The source of attributes for an evaluation. It pushes each attribute it
    has to the receiver, once per attribute.
    """

    @abstractmethod
    def populate(self, receiver: ContextReceiver) -> None: ...


class DictContext(AttributeContext):
    __slots__ = ("_attributes",)

    def __init__(self, attributes: Mapping[str, AttributeValue]):
        self._attributes = attributes

    def populate(self, receiver: ContextReceiver) -> None:
        for k, v in self._attributes.items():
            receiver.receive(k, v)


class ObjectContext(AttributeContext):
    """
    Reports the public, non-callable attributes of an object. Dataclass
    instances report their fields.
    """

    __slots__ = ("_obj",)

    def __init__(self, obj: Any):
        self._obj = obj

    def _names(self) -> list[str]:
        obj = self._obj
        if dataclasses.is_dataclass(obj):
            return [f.name for f in dataclasses.fields(obj)]
        names = list(getattr(obj, "__dict__", {}))
        for cls in type(obj).__mro__:
            slots = getattr(cls, "__slots__", ())
            names.extend([slots] if isinstance(slots, str) else slots)
        return names

    def populate(self, receiver: ContextReceiver) -> None:
        seen = set()
        for name in self._names():
            if name.startswith("_") or name in seen:
                continue
            seen.add(name)
            v = getattr(self._obj, name, None)
            if callable(v):
                continue
            receiver.receive(name, v)


class _ChainContext(AttributeContext):
    """
    Populates from each context in turn; later contexts override earlier
    ones.
    """

    __slots__ = ("_contexts",)

    def __init__(self, *contexts: AttributeContext):
        self._contexts = contexts

    def populate(self, receiver: ContextReceiver) -> None:
        for c in self._contexts:
            c.populate(receiver)


def as_context(obj: Any) -> AttributeContext:
    if isinstance(obj, AttributeContext):
        return obj
    if obj is None:
        return DictContext({})
    if isinstance(obj, Mapping):
        return DictContext(obj)
    return ObjectContext(obj)


class _AttributeCollector(ContextReceiver):
    __slots__ = ("attributes",)

    def __init__(self):
        self.attributes: Attributes = {}

    def receive(self, name: str, value: AttributeValue) -> None:
        if isinstance(name, str):
            self.attributes[name.casefold()] = value


class _ValueReceiver(ContextReceiver):
    """
    Captures the value of a single attribute, matched case-insensitively.
    """

    __slots__ = ("_name", "value")

    def __init__(self, name: str):
        self._name = name.casefold()
        self.value: Any = MISSING

    def receive(self, name: str, value: AttributeValue) -> None:
        if isinstance(name, str) and name.casefold() == self._name:
            self.value = MISSING if value is None else value


def collect_attributes(context: Any) -> Attributes:
    """
    Gather the attributes of the context into a dict keyed by casefolded name.
    """
    c = _AttributeCollector()
    as_context(context).populate(c)
    return c.attributes


def _identifier(value: Any) -> str | None:
    if value is MISSING or value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value or None
    if isinstance(value, _array_types):
        return None
    return str(value)


# Overrides


class OverrideProvider:
    """
    A source of manual overrides, e.g. a list of test users or a query
    string parameter. Returns the id of the variant to force for the feature,
    or None to leave resolution alone.
    """

    name: str = ""

    @abstractmethod
    def try_override(self, feature: Feature, context: AttributeContext) -> VariantID | None: ...


class StaticOverrideProvider(OverrideProvider):
    """
    Forces variants for specific identifiers. overrides maps a feature name
    to a mapping of identifier to variant id.
    """

    def __init__(self, overrides: Mapping[str, Mapping[str, VariantID]], attribute: str = "user_id", name: str = "static"):
        self._overrides = {f: dict(m) for f, m in overrides.items()}
        self._attribute = attribute
        self.name = name

    def try_override(self, feature: Feature, context: AttributeContext) -> VariantID | None:
        by_id = self._overrides.get(feature.name)
        if not by_id:
            return None
        r = _ValueReceiver(self._attribute)
        context.populate(r)
        identifier = _identifier(r.value)
        if identifier is None:
            return None
        return by_id.get(identifier)


def _provider_name(p: Any) -> str:
    return getattr(p, "name", "") or type(p).__name__


# Selection


class FeatureEvaluation:
    """
    The result of evaluating a feature.
    """

    __slots__ = ("feature", "variant", "reason", "override_provider")
    feature: str
    variant: Variant | None
    reason: Literal["match", "override", "no_match", "disabled"]
    override_provider: str | Literal[""]

    def __init__(self, feature: str):
        self.feature = feature
        self.variant = None
        self.reason = "no_match"
        self.override_provider = ""

    def __repr__(self) -> str:
        v = self.variant.id if self.variant is not None else None
        return f"FeatureEvaluation({self.feature!r}, variant={v!r}, reason={self.reason!r})"

    @property
    def variant_id(self) -> VariantID | None:
        return self.variant.id if self.variant is not None else None


_default_conditions = ConditionEvaluator()


def _allocated(
    feature: Feature,
    variant: Variant,
    attributes: Attributes,
    spots: dict[tuple[str, str, int], float | None],
) -> bool:
    if variant.namespace is None and variant.allocation is None:
        return True
    unit = variant.allocation_unit or feature.allocation_unit
    identifier = _identifier(lookup(attributes, unit))
    if identifier is None:
        logger.debug("no %s in context, variant %s of %s is not allocated", unit, variant.id, feature.name)
        return False
    if variant.namespace is not None and not in_namespace(identifier, variant.namespace):
        return False
    if variant.allocation is None:
        return True
    salt = variant.salt if variant.salt is not None else feature.salt
    version = variant.hash_version or feature.hash_version
    key = (salt, identifier, version)
    if key not in spots:
        spots[key] = get_allocation_spot(salt, identifier, version)
    spot = spots[key]
    return spot is not None and variant.allocation.contains(spot)


def select_variant(
    feature: Feature,
    context: Any,
    overrides: Iterable[OverrideProvider] = (),
    *,
    conditions: ConditionEvaluator | None = None,
    attributes: Attributes | None = None,
) -> FeatureEvaluation:
    """
    Pick the variant of the feature that applies to the context.

    Override providers are asked first, in order, and the first answer naming
    a variant of the feature wins outright. Otherwise the variant with the best
    priority whose filters are all satisfied and whose allocation contains the
    identifier's spot wins. No winner is a normal outcome.

    Malformed targeting data never raises: the variant carrying it simply
    does not match. attributes may be passed when they were already collected
    from the context.
    """
    context = as_context(context)
    e = FeatureEvaluation(feature.name)
    if not feature.enabled:
        e.reason = "disabled"
        return e

    for provider in overrides:
        try:
            variant_id = provider.try_override(feature, context)
        except Exception:
            logger.exception("override provider %s failed for feature %s", _provider_name(provider), feature.name)
            continue
        if variant_id is None:
            continue
        variant = feature.get_variant(variant_id)
        if variant is None:
            logger.warning("override provider %s chose unknown variant %s of %s", _provider_name(provider), variant_id, feature.name)
            break
        e.variant = variant
        e.reason = "override"
        e.override_provider = _provider_name(provider)
        return e

    if conditions is None:
        conditions = _default_conditions
    if attributes is None:
        attributes = collect_attributes(context)

    try:
        applicable = all(conditions.matches(f, attributes) for f in feature.filters)
    except Exception:
        logger.exception("error evaluating filters of %s", feature.name)
        applicable = False
    if not applicable:
        return e

    # The first variant in priority order to pass both gates wins.
    spots: dict[tuple[str, str, int], float | None] = {}
    for variant in feature._by_priority:
        try:
            if not all(conditions.matches(f, attributes) for f in variant.filters):
                continue
            if not _allocated(feature, variant, attributes, spots):
                continue
        except Exception:
            logger.exception("error evaluating variant %s of %s", variant.id, feature.name)
            continue
        e.variant = variant
        e.reason = "match"
        return e

    return e


# Loading


class FeatureProvider:
    """
    A source of features, e.g. a configuration file or a remote feature
    service. Each call returns a snapshot.
    """

    @abstractmethod
    def get_features(self, cancel: threading.Event | None = None) -> Iterable[Feature]: ...


def merge_configs(*configs: DictConfig) -> DictConfig:
    """
    Merge configs split across files, e.g. one file of features per team.
    Order is not important and values are shallow copied. A feature defined
    in more than one config is an error.

    Nothing is validated here, compile the result with
    CompiledConfig.from_dict for that.
    """
    merged = defaultdict(dict)
    for config in configs:
        for key, value in config.items():
            d = merged[key]
            intersection = d.keys() & value.keys()
            if intersection:
                raise ValueError(f"Duplicate keys: {intersection}")
            d.update(value)
    return merged


with open(os.path.join(os.path.dirname(__file__), "config_schema.json")) as f:
    _config_schema = json.load(f)


def _range_bound(s: str) -> Any:
    n = _to_number(s)
    return s if n is None else n


def _shorthand_condition(value: Any) -> Any:
    """
    Expand config shorthand into a condition expression:

    - "[a; b)" range notation becomes a pair of ordering comparisons
    - "^..." is a regular expression
    - "...*..." is a wildcard pattern
    - anything else is used as is
    """
    if not isinstance(value, str):
        return value
    m = _range_re.fullmatch(value)
    if m:
        lo = "$gte" if m.group(1) == "[" else "$gt"
        hi = "$lte" if m.group(4) == "]" else "$lt"
        return {lo: _range_bound(m.group(2).strip()), hi: _range_bound(m.group(3).strip())}
    if value.startswith("^"):
        return {"$regex": value}
    if "*" in value:
        return {"$regex": re.escape(value).replace(r"\*", ".*")}
    return value


def _load_filters(c: Mapping[str, Any], conditions: ConditionEvaluator) -> list[Filter]:
    """
    Build the filters of a config. Conditions that fail to parse are dropped
    with a warning. A property left without any valid condition gets the NEVER
    condition so the filter can not be satisfied.
    """
    filters = []
    for prop, value in c.items():
        values = value if isinstance(value, list) else [value]
        valid = []
        for v in values:
            expr = _shorthand_condition(v)
            try:
                conditions.parse(expr)
            except ParseError:
                continue
            valid.append(expr)
        if values and not valid:
            logger.warning("no valid condition for %r, it never matches", prop)
            valid = [NEVER]
        filters.append(Filter(prop, valid))
    return filters


class CompiledConfig(FeatureProvider):
    """
    Compiled config holding the features to evaluate.
    """

    __slots__ = ("features",)
    features: dict[str, Feature]

    @staticmethod
    def from_bytes(b: bytes) -> CompiledConfig:
        obj = dill.loads(b)
        assert isinstance(obj, CompiledConfig)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    def get_features(self, cancel: threading.Event | None = None) -> list[Feature]:
        return list(self.features.values())

    @staticmethod
    def from_features(features: Iterable[Feature]) -> CompiledConfig:
        cc = CompiledConfig()
        cc.features = {}
        for f in features:
            if f.name in cc.features:
                raise ValueError(f"duplicate feature {f.name}")
            cc.features[f.name] = f
        return cc

    @staticmethod
    def from_dict(c: DictConfig) -> CompiledConfig:
        """
        Compile the config into features that can be loaded into the evaluator.

        Every variant must declare an allocation. A variant without an explicit
        priority gets 1024 minus the number of its filters, so among equally
        unprioritized variants the more specific one wins.
        """
        jsonschema.validate(c, _config_schema)

        conditions = ConditionEvaluator()
        features = []
        for feature_name, f in c.get("features", {}).items():
            if not f.get("enabled", True):
                continue

            variants = []
            for variant_name, v in f["variants"].items():
                variant_id = f"{feature_name}:{variant_name}"
                try:
                    allocation = Allocation.parse(v["allocation"])
                    namespace = Namespace(*v["namespace"]) if "namespace" in v else None
                except RangeError as e:
                    raise RangeError(f"(variant {variant_id}) {e}") from e
                filters = _load_filters(v.get("filters", {}), conditions)
                priority = v.get("priority")
                if priority is None:
                    priority = 1024 - len(filters)
                variants.append(
                    Variant(
                        variant_id,
                        filters=filters,
                        allocation=allocation,
                        priority=priority,
                        configuration=deepcopy(v.get("configuration")),
                        allocation_unit=v.get("allocation_unit"),
                        namespace=namespace,
                    )
                )

            features.append(
                Feature(
                    feature_name,
                    variants,
                    salt=f.get("salt"),
                    allocation_unit=f.get("allocation_unit", "user_id"),
                    provider_name=f.get("provider", "Configuration"),
                    hash_version=f.get("hash_version", HashVersion.V4),
                    filters=_load_filters(f.get("filters", {}), conditions),
                    metadata=f.get("metadata", {}),
                )
            )

        return CompiledConfig.from_features(features)


# Evaluation


_prom_labels = ["feature", "variant", "reason"]
_prom_eval_duration = Histogram(
    "featvar_evaluation_seconds",
    "Feature evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=_prom_labels,
)


class Evaluator:
    """
    The evaluator resolves the variants of features for a context. Features
    come from the loaded config and from any feature providers, override
    providers are consulted before normal resolution. The evaluator is
    thread-safe.
    """

    def __init__(
        self,
        overrides: Iterable[OverrideProvider] = (),
        providers: Iterable[FeatureProvider] = (),
    ):
        self._default_attributes_mu = threading.RLock()
        self._default_attributes: Attributes = {}
        self._config_mu = threading.RLock()
        self._config: CompiledConfig | None = None
        self._overrides = list(overrides)
        self._providers = list(providers)
        self._conditions = ConditionEvaluator()

    def _get_default_attributes(self):
        with self._default_attributes_mu:
            attrs = self._default_attributes
        return attrs

    @staticmethod
    def _validate_attributes_type(attributes: Attributes):
        if not isinstance(attributes, Mapping):
            raise TypeError(f"attributes must be a dict, not {type(attributes).__name__}")
        for k, v in attributes.items():
            if not isinstance(k, str):
                raise TypeError(f"attribute key must be a string, not {type(k).__name__}")
            if isinstance(v, _array_types):
                for e in v:
                    if e is None or not isinstance(e, _scalar_types):
                        raise TypeError(f"array values must be strings, numbers, booleans, timestamps or uuids not {type(e).__name__}")
            elif not isinstance(v, _scalar_types):
                raise TypeError(f"attribute value must be a string, number, boolean, timestamp, uuid, array or None, not {type(v).__name__}")

    def set_default_attributes(self, attributes: Attributes = {}):
        """
        Set the default attributes to use when evaluating features.
        Attributes of the evaluation context override these values.
        This is useful for setting global attributes values that are always present
        such as environment, region, etc.
        set_default_attributes is thread-safe.
        """
        self._validate_attributes_type(attributes)
        attributes = deepcopy(dict(attributes))
        with self._default_attributes_mu:
            self._default_attributes = attributes

    def load_config(self, config: CompiledConfig):
        """
        Load the compiled config into the evaluator. load_config is thread-safe.
        Parsed conditions of the previous config are discarded.
        """
        with self._config_mu:
            self._config = config
            self._conditions = ConditionEvaluator()

    def _sources(self) -> list[FeatureProvider]:
        with self._config_mu:
            config = self._config
        if config is None and not self._providers:
            raise RuntimeError("config not loaded")
        return ([config] if config is not None else []) + self._providers

    def _context(self, context: Any) -> AttributeContext:
        if isinstance(context, Mapping):
            self._validate_attributes_type(context)
        elif context is not None and isinstance(context, _scalar_types + _array_types):
            raise TypeError(f"context must be a dict, an AttributeContext or an object, not {type(context).__name__}")
        ctx = as_context(context)
        defaults = self._get_default_attributes()
        if defaults:
            ctx = _ChainContext(DictContext(defaults), ctx)
        return ctx

    def _record_eval_metrics(self, e: FeatureEvaluation, dur: float):
        labels = {
            "feature": e.feature,
            "variant": e.variant_id or "",
            "reason": e.reason,
        }
        _prom_eval_duration.labels(**labels).observe(dur)

    def _evaluate(self, feature: Feature, context: AttributeContext, attributes: Attributes) -> FeatureEvaluation:
        start = time.perf_counter()
        with self._config_mu:
            conditions = self._conditions
        e = select_variant(feature, context, self._overrides, conditions=conditions, attributes=attributes)
        dur = time.perf_counter() - start
        self._record_eval_metrics(e, dur)
        return e

    def detailed_evaluate_all(self, names: Iterable[str], context: Any = {}) -> dict[str, FeatureEvaluation]:
        """
        Evaluate the named features for the given context and return
        FeatureEvaluations. When several sources provide a feature of the
        same name, the first source wins. detailed_evaluate_all is
        thread-safe.
        """
        ctx = self._context(context)
        attributes = collect_attributes(ctx)

        features: dict[str, Feature] = {}
        for source in self._sources():
            for feature in source.get_features():
                features.setdefault(feature.name, feature)

        fe: dict[str, FeatureEvaluation] = {}
        for name in set(names):
            feature = features.get(name)
            if feature is None:
                raise ValueError(f"Feature {name} does not exist in the config")
            fe[name] = self._evaluate(feature, ctx, attributes)
        return fe

    def evaluate(self, name: str, context: Any = {}) -> Variant | None:
        """
        Evaluate the given feature. evaluate is thread-safe.

        name: The name of the feature.
        context: A dict of attributes, an AttributeContext or an object whose
        public attributes are used.
        """
        return self.detailed_evaluate_all([name], context)[name].variant

    def evaluate_all(self, names: Iterable[str], context: Any = {}) -> dict[str, Variant | None]:
        """
        Evaluate all named features for the given context. evaluate_all is
        thread-safe.
        """
        return {n: e.variant for n, e in self.detailed_evaluate_all(names, context).items()}

    def matching_variants(self, context: Any = {}, cancel: threading.Event | None = None) -> Iterator[Variant]:
        """
        Yield the matched variant of every feature of every source, in source
        order. Stops early when cancel is set.
        """
        ctx = self._context(context)
        attributes = collect_attributes(ctx)
        for source in self._sources():
            for feature in source.get_features(cancel):
                if cancel is not None and cancel.is_set():
                    return
                e = self._evaluate(feature, ctx, attributes)
                if e.variant is not None:
                    yield e.variant


__all__ = [
    "MISSING",
    "NEVER",
    "Allocation",
    "AttributeContext",
    "CompiledConfig",
    "Condition",
    "ConditionEvaluator",
    "ContextReceiver",
    "DictContext",
    "Evaluator",
    "FeatvarError",
    "Feature",
    "FeatureEvaluation",
    "FeatureProvider",
    "Filter",
    "HashVersion",
    "Namespace",
    "ObjectContext",
    "OverrideProvider",
    "ParseError",
    "Range",
    "RangeError",
    "RangeType",
    "StaticOverrideProvider",
    "Variant",
    "Version",
    "as_context",
    "collect_attributes",
    "compare_versions",
    "fnv1a32",
    "get_allocation_spot",
    "in_namespace",
    "merge_configs",
    "select_variant",
    "try_parse_version",
]
