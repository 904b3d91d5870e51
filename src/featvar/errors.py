class FeatvarError(Exception):
    """
    Base class of errors raised by featvar.
    """


class ParseError(FeatvarError, ValueError):
    """
    A condition expression is structurally invalid. During evaluation the
    filter holding it is treated as never satisfied.
    """


class RangeError(FeatvarError, ValueError):
    """
    An allocation, namespace or range is out of bounds. Raised while loading
    features, never while evaluating them.
    """
