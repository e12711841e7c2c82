from ...config import PatternSize


class PatchFilter(object):
    """Base class for all patch filters.

    A patch filter receives the current list of candidate patches and returns
    a (usually smaller) list, discarding patches which are inconsistent with
    being part of the calibration pattern. Filters only inspect the geometric
    and intensity attributes of a :class:`~gridcal.patches.Patch`.

    Basic requirements for each filter:
    * The filter must override :meth:`filter_name`, :meth:`display_name`,
      :meth:`apply`, and :meth:`__str__`
      * filter_name: A unique identifier, used for lookups and configuration
        files.
      * display_name: Human readable name, used in log messages.
      * __str__: Should reuse `display_name` (and may optionally add a summary
        of the filter's configuration parameters).
      * apply: must include (at least) the following sanity check:
        ```
        if not self.enabled or patches is None:
            return patches
        ```
    * A filter must have a default constructor which initializes all internal
      parameters to sane defaults.
    * Parametrized filters provide setters (which perform sanity checks) and
      override :meth:`get_configuration` and :meth:`set_configuration`,
      calling the super class' implementation, too.
    * Each filter class must be registered via :func:`register_filter`
    """

    @staticmethod
    def filter_name() -> str:
        """Returns the unique name used in configuration files (lower-case,
        alpha-numeric and hyphens only)."""
        return "filter-base"

    @staticmethod
    def display_name() -> str:
        """Returns a human-readable name for this filter."""
        return "Basic Patch Filter"

    def __init__(self):
        self.enabled = True

    def apply(self, patches: list, pattern_size: PatternSize) -> list:
        raise NotImplementedError(
            f'Filter "{type(self).filter_name()}" does not override `apply`.')

    def set_enabled(self, enabled) -> None:
        """Enables/disables this filter instance."""
        self.enabled = enabled

    def set_configuration(self, config: dict) -> None:
        """Deserializes this filter's configuration from the given
        dictionary."""
        # The 'enabled' field is optional in our TOML specification.
        if 'enabled' in config:
            self.enabled = config['enabled']

    def get_configuration(self) -> dict:
        """Serializes this filter's configuration as a dictionary."""
        d = {'filter': type(self).filter_name()}
        # Filters are enabled by default, so we only store disabled ones
        if not self.enabled:
            d['enabled'] = self.enabled
        return d

    def __repr__(self) -> str:
        return type(self).filter_name()

    def __str__(self) -> str:
        """Returns the string representation, which always starts with the
        :meth:`display_name`."""
        return type(self).display_name()


def positive(name: str, value: float) -> float:
    """Returns the value as float or raises a ValueError if it is not > 0."""
    value = float(value)
    if value <= 0:
        raise ValueError(f'Parameter `{name}` must be > 0, got {value}.')
    return value


# Registry of all available patch filters. The order of the default pipeline
# is defined separately, see `PatchFilterPipeline.default`.
__REGISTERED_FILTERS = dict()

def register_filter(filter_name: str, cls: PatchFilter) -> None:
    """Registers the filter class, so that it can be created via
    :func:`create_filter`.

    Args:
        filter_name: Name used to identify this filter.
        cls: Reference to the filter class.

    Raises:
        KeyError: If the `filter_name` has already been used.
        ValueError: If `cls` is not a PatchFilter subclass.
    """
    global __REGISTERED_FILTERS
    if filter_name in __REGISTERED_FILTERS:
        raise KeyError(f'Filter name `{filter_name}` has already been registered.')
    if not isinstance(cls, type) or cls == PatchFilter or not issubclass(cls, PatchFilter):
        raise ValueError(f'Filter {filter_name} is not a PatchFilter subclass.')
    __REGISTERED_FILTERS[filter_name] = cls


def unregister_filter(filter_name: str) -> None:
    """Unregisters the filter (used to simplify testing)."""
    global __REGISTERED_FILTERS
    __REGISTERED_FILTERS.pop(filter_name)


def create_filter(filter_name: str) -> PatchFilter:
    """Constructs & returns the specified filter.

    Raises:
        KeyError: If the `filter_name` is unknown, i.e. if it has not been
            registered via :func:`register_filter`.
    """
    if filter_name not in __REGISTERED_FILTERS:
        raise KeyError(f'Filter with name `{filter_name}` has not been registered!')
    return __REGISTERED_FILTERS[filter_name]()


def list_filter_names() -> list:
    """Returns the names of all registered filters."""
    return [name for name in __REGISTERED_FILTERS]
