"""Declarative table definitions.

Builders (``Column``, ``Filter``, ``Action``, ``BulkAction``) are mutable and
fluent; ``build()`` turns them into frozen items that the query pipeline and
the action dispatcher consume. Every item has a transport form with the
callables replaced by ``has_*`` flags so nothing executable crosses a process
boundary.

Visibility is either a bool or a predicate. Predicates are evaluated on every
call and never cached.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tablekit.services.context import RequestContext

logger = logging.getLogger(__name__)

Visibility = bool | Callable[..., Any]
RenderCallback = Callable[[Any], Any]
FilterCallback = Callable[[Any, Any, str], Any]
ExecuteCallback = Callable[[Any, Any], Any]
OptionsProvider = Callable[[Any], Any]

DEFAULT_CONFIRM_MESSAGE = "Are you sure you want to perform this action?"
DEFAULT_CONFIRM_TEXT = "Confirm"
DEFAULT_CANCEL_TEXT = "Cancel"
DEFAULT_EMPTY_OPTION_LABEL = "All"

VIEWPORT_ORDER = ("sm", "md", "lg", "xl", "2xl")


def evaluate_visibility(condition: Visibility, *args: Any) -> bool:
    if isinstance(condition, bool):
        return condition
    return bool(condition(*args))


def viewport_classes(viewports: Iterable[str], element_type: str = "table-cell") -> str:
    """CSS utility classes that hide an element below the given breakpoints."""
    valid = [viewport for viewport in viewports if viewport in VIEWPORT_ORDER]
    if not valid:
        return ""
    return " ".join(["hidden", *(f"{viewport}:{element_type}" for viewport in valid)])


def resolve_attribute_path(record: Any, path: str) -> Any:
    """Follow a dotted attribute path; collections yield a list of values."""
    value = record
    for part in path.split("."):
        if value is None:
            return None
        if isinstance(value, (list, tuple, set)):
            value = [getattr(item, part, None) for item in value]
            continue
        value = getattr(value, part, None)
    return value


def normalize_options(raw: Any) -> list[dict[str, Any]]:
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        return [{"value": value, "label": label} for value, label in raw.items()]
    options = []
    for item in raw:
        if isinstance(item, Mapping):
            options.append({"value": item.get("value"), "label": item.get("label", item.get("value"))})
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            options.append({"value": item[0], "label": item[1]})
        else:
            options.append({"value": item, "label": str(item)})
    return options


class FilterKind(str, Enum):
    select = "select"
    multiselect = "multiselect"
    boolean = "boolean"
    relationship = "relationship"
    has_relationship = "has_relationship"
    date_range = "date_range"
    text = "text"

    @classmethod
    def parse(cls, value: FilterKind | str) -> FilterKind:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.debug("Unknown filter kind %r, using substring match", value)
            return cls.text


@dataclass(frozen=True)
class RelationshipDescriptor:
    relation: str
    column: str | None = None

    def to_transport(self) -> dict[str, Any]:
        return {"relation": self.relation, "column": self.column}


@dataclass(frozen=True)
class ColumnItem:
    key: str
    label: str
    display_type: str = "text"
    display_attributes: Mapping[str, Any] = field(default_factory=dict)
    render: RenderCallback | None = None
    visibility: Visibility = True
    searchable: bool = False
    sortable: bool = False
    viewports: tuple[str, ...] = ()
    css_class: str = ""
    width: str | None = None

    @property
    def is_relation_path(self) -> bool:
        return "." in self.key

    def is_visible(self, row: Any = None) -> bool:
        return evaluate_visibility(self.visibility, row)

    def value_for(self, record: Any) -> Any:
        if self.render is not None:
            return self.render(record)
        return resolve_attribute_path(record, self.key)

    def to_transport(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "type": self.display_type,
            "attributes": dict(self.display_attributes),
            "searchable": self.searchable,
            "sortable": self.sortable,
            "viewports": list(self.viewports),
            "viewport_classes": viewport_classes(self.viewports),
            "class": self.css_class,
            "width": self.width,
            "has_custom_render": self.render is not None,
        }


@dataclass(frozen=True)
class FilterItem:
    key: str
    label: str
    kind: FilterKind = FilterKind.select
    placeholder: str | None = None
    options: Mapping[Any, Any] | tuple | None = None
    options_provider: OptionsProvider | None = None
    relationship: RelationshipDescriptor | None = None
    value_mapping: Mapping[Any, Any] | None = None
    field_mapping: str | None = None
    column: str | None = None
    execute: FilterCallback | None = None
    visibility: Visibility = True
    props: Mapping[str, Any] = field(default_factory=dict)

    @property
    def target_field(self) -> str:
        return self.field_mapping or self.column or self.key

    def is_visible(self, context: Any = None) -> bool:
        return evaluate_visibility(self.visibility, context)

    def resolve_options(self, context: Any = None) -> list[dict[str, Any]]:
        if self.options is not None:
            return normalize_options(self.options)
        if self.options_provider is not None:
            return normalize_options(self.options_provider(context))
        return []

    def describe(self, value: Any, context: Any = None) -> dict[str, Any]:
        """Chip shown for an active filter value."""
        if self.kind == FilterKind.date_range and isinstance(value, Mapping):
            value_label = _date_range_label(value)
        elif isinstance(value, (list, tuple, set)):
            labels = {str(option["value"]): option["label"] for option in self.resolve_options(context)}
            value_label = ", ".join(str(labels.get(str(item), item)) for item in value)
        elif self.kind == FilterKind.select:
            labels = {str(option["value"]): option["label"] for option in self.resolve_options(context)}
            value_label = labels.get(str(value), value)
        else:
            value_label = value
        return {"key": self.key, "label": self.label, "value": value, "value_label": value_label}

    def to_transport(self, context: Any = None) -> dict[str, Any]:
        options = self.resolve_options(context)
        if self.kind in (FilterKind.select, FilterKind.boolean, FilterKind.has_relationship):
            options = [
                {"value": "", "label": self.placeholder or DEFAULT_EMPTY_OPTION_LABEL},
                *options,
            ]
        return {
            "key": self.key,
            "label": self.label,
            "type": self.kind.value,
            "placeholder": self.placeholder,
            "options": options,
            "relationship": self.relationship.to_transport() if self.relationship else None,
            "value_mapping": dict(self.value_mapping) if self.value_mapping else None,
            "field_mapping": self.field_mapping,
            "props": dict(self.props),
            "has_execute": self.execute is not None,
            "has_options_provider": self.options_provider is not None,
        }


def _date_range_label(value: Mapping[str, Any]) -> str:
    start = value.get("from")
    end = value.get("to")
    if start and end:
        return f"{start} - {end}"
    if start:
        return f"From {start}"
    if end:
        return f"To {end}"
    return ""


@dataclass(frozen=True)
class Confirmation:
    message: str | Callable[[Any], Any] | None = None
    view: str | None = None
    view_props: Mapping[str, Any] = field(default_factory=dict)

    def resolve(self, target: Any) -> dict[str, Any]:
        if self.view is not None:
            return {"type": "view", "view": self.view, "props": dict(self.view_props)}
        if callable(self.message):
            result = self.message(target)
            if isinstance(result, Mapping):
                return {
                    "type": "config",
                    "title": result.get("title", DEFAULT_CONFIRM_TEXT),
                    "content": result.get("content", ""),
                    "confirm_text": result.get("confirm_text", DEFAULT_CONFIRM_TEXT),
                    "cancel_text": result.get("cancel_text", DEFAULT_CANCEL_TEXT),
                }
            return {"type": "message", "message": result}
        return {"type": "message", "message": self.message or DEFAULT_CONFIRM_MESSAGE}

    def to_transport(self) -> dict[str, Any]:
        return {
            "message": self.message if isinstance(self.message, str) else None,
            "has_confirm_callable": callable(self.message),
            "view": self.view,
            "view_props": dict(self.view_props),
        }


@dataclass(frozen=True)
class ModalDescriptor:
    view: str
    kind: str = "view"
    props: Mapping[str, Any] | Callable[[Any], Mapping[str, Any]] = field(default_factory=dict)

    def resolve(self, target: Any) -> dict[str, Any]:
        props = self.props(target) if callable(self.props) else self.props
        return {"kind": self.kind, "view": self.view, "props": dict(props or {})}

    def to_transport(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "view": self.view,
            "props": None if callable(self.props) else dict(self.props),
            "has_props_callable": callable(self.props),
        }


@dataclass(frozen=True)
class _ActionItemBase:
    key: str
    label: str
    icon: str | None = None
    variant: str = "ghost"
    color: str | None = None
    visibility: Visibility = True
    ability: str | None = None
    confirmation: Confirmation | None = None
    modal: ModalDescriptor | None = None
    execute: ExecuteCallback | None = None

    @property
    def requires_confirmation(self) -> bool:
        return self.confirmation is not None

    def resolve_confirmation(self, target: Any) -> dict[str, Any]:
        if self.confirmation is None:
            return {"required": False}
        return {"required": True, **self.confirmation.resolve(target)}

    def _base_transport(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "icon": self.icon,
            "variant": self.variant,
            "color": self.color,
            "confirm": self.requires_confirmation,
            "confirmation": self.confirmation.to_transport() if self.confirmation else None,
            "has_modal": self.modal is not None,
            "modal": self.modal.to_transport() if self.modal else None,
            "has_execute": self.execute is not None,
        }


@dataclass(frozen=True)
class ActionItem(_ActionItemBase):
    route: str | Callable[[Any], str] | None = None

    def is_visible(self, row: Any, ctx: RequestContext) -> bool:
        """Predicate ``show(row, actor)`` plus the declared ability."""
        if not ctx.can(self.ability):
            return False
        return evaluate_visibility(self.visibility, row, ctx.actor)

    def resolve_route(self, row: Any) -> str | None:
        if callable(self.route):
            return self.route(row)
        return self.route

    def to_transport(self, row: Any = None) -> dict[str, Any]:
        data = self._base_transport()
        data["has_route"] = self.route is not None
        if row is not None:
            data["route"] = self.resolve_route(row)
            if self.modal is not None:
                data["modal"] = self.modal.resolve(row)
        else:
            data["route"] = self.route if isinstance(self.route, str) else None
        return data


@dataclass(frozen=True)
class BulkActionItem(_ActionItemBase):
    def is_visible(self, records: Any, ctx: RequestContext) -> bool:
        """Predicate ``show(records, actor)``; ``records`` is None while rendering the toolbar."""
        if not ctx.can(self.ability):
            return False
        return evaluate_visibility(self.visibility, records, ctx.actor)

    def to_transport(self) -> dict[str, Any]:
        return self._base_transport()


class Column:
    def __init__(self, key: str, label: str | None = None):
        self._key = key
        self._label = label or key.replace(".", " ").replace("_", " ").title()
        self._display_type = "text"
        self._display_attributes: dict[str, Any] = {}
        self._render: RenderCallback | None = None
        self._visibility: Visibility = True
        self._searchable = False
        self._sortable = False
        self._viewports: tuple[str, ...] = ()
        self._css_class = ""
        self._width: str | None = None

    @classmethod
    def make(cls, key: str, label: str | None = None) -> Column:
        return cls(key, label)

    def type(self, display_type: str, **attributes: Any) -> Column:
        self._display_type = display_type
        self._display_attributes = attributes
        return self

    def render(self, callback: RenderCallback) -> Column:
        self._render = callback
        return self

    def show(self, condition: Visibility) -> Column:
        self._visibility = condition
        return self

    def searchable(self, flag: bool = True) -> Column:
        self._searchable = flag
        return self

    def sortable(self, flag: bool = True) -> Column:
        self._sortable = flag
        return self

    def viewports(self, *viewports: str) -> Column:
        invalid = [viewport for viewport in viewports if viewport not in VIEWPORT_ORDER]
        if invalid:
            logger.debug("Dropping unknown viewports %s on column %s", invalid, self._key)
        self._viewports = tuple(viewport for viewport in viewports if viewport in VIEWPORT_ORDER)
        return self

    def css_class(self, css_class: str) -> Column:
        self._css_class = css_class
        return self

    def width(self, width: str) -> Column:
        self._width = width
        return self

    def build(self) -> ColumnItem:
        return ColumnItem(
            key=self._key,
            label=self._label,
            display_type=self._display_type,
            display_attributes=dict(self._display_attributes),
            render=self._render,
            visibility=self._visibility,
            searchable=self._searchable,
            sortable=self._sortable,
            viewports=self._viewports,
            css_class=self._css_class,
            width=self._width,
        )


class Filter:
    def __init__(self, key: str, label: str | None = None):
        self._key = key
        self._label = label or key.replace("_", " ").title()
        self._kind = FilterKind.select
        self._placeholder: str | None = None
        self._options: Mapping[Any, Any] | tuple | None = None
        self._options_provider: OptionsProvider | None = None
        self._relationship: RelationshipDescriptor | None = None
        self._value_mapping: Mapping[Any, Any] | None = None
        self._field_mapping: str | None = None
        self._column: str | None = None
        self._execute: FilterCallback | None = None
        self._visibility: Visibility = True
        self._props: dict[str, Any] = {}

    @classmethod
    def make(cls, key: str, label: str | None = None) -> Filter:
        return cls(key, label)

    def type(self, kind: FilterKind | str) -> Filter:
        self._kind = FilterKind.parse(kind)
        return self

    def placeholder(self, placeholder: str) -> Filter:
        self._placeholder = placeholder
        return self

    def options(self, options: Mapping[Any, Any] | Iterable[Any]) -> Filter:
        self._options = options if isinstance(options, Mapping) else tuple(options)
        return self

    def options_provider(self, provider: OptionsProvider) -> Filter:
        self._options_provider = provider
        return self

    def relationship(self, relation: str, column: str | None = None) -> Filter:
        self._relationship = RelationshipDescriptor(relation=relation, column=column)
        return self

    def value_mapping(self, mapping: Mapping[Any, Any]) -> Filter:
        self._value_mapping = dict(mapping)
        return self

    def field_mapping(self, field_name: str) -> Filter:
        self._field_mapping = field_name
        return self

    def column(self, column: str) -> Filter:
        self._column = column
        return self

    def execute(self, callback: FilterCallback) -> Filter:
        self._execute = callback
        return self

    def show(self, condition: Visibility) -> Filter:
        self._visibility = condition
        return self

    def props(self, **props: Any) -> Filter:
        self._props.update(props)
        return self

    def build(self) -> FilterItem:
        return FilterItem(
            key=self._key,
            label=self._label,
            kind=self._kind,
            placeholder=self._placeholder,
            options=self._options,
            options_provider=self._options_provider,
            relationship=self._relationship,
            value_mapping=self._value_mapping,
            field_mapping=self._field_mapping,
            column=self._column,
            execute=self._execute,
            visibility=self._visibility,
            props=dict(self._props),
        )


class _ActionBuilder:
    def __init__(self, key: str, label: str):
        self._key = key
        self._label = label
        self._icon: str | None = None
        self._variant = "ghost"
        self._color: str | None = None
        self._visibility: Visibility = True
        self._ability: str | None = None
        self._confirmation: Confirmation | None = None
        self._modal: ModalDescriptor | None = None
        self._execute: ExecuteCallback | None = None

    @classmethod
    def make(cls, key: str, label: str):
        return cls(key, label)

    def icon(self, icon: str):
        self._icon = icon
        return self

    def variant(self, variant: str):
        self._variant = variant
        return self

    def color(self, color: str):
        self._color = color
        return self

    def show(self, condition: Visibility):
        self._visibility = condition
        return self

    def can(self, ability: str):
        self._ability = ability
        return self

    def confirm(self, message: str | Callable[[Any], Any] | None = None):
        self._confirmation = Confirmation(message=message)
        return self

    def confirm_view(self, view: str, props: Mapping[str, Any] | None = None):
        self._confirmation = Confirmation(view=view, view_props=dict(props or {}))
        return self

    def modal(
        self,
        view: str,
        props: Mapping[str, Any] | Callable[[Any], Mapping[str, Any]] | None = None,
        kind: str = "view",
    ):
        self._modal = ModalDescriptor(view=view, kind=kind, props=props or {})
        return self

    def execute(self, callback: ExecuteCallback):
        self._execute = callback
        return self

    def _item_kwargs(self) -> dict[str, Any]:
        return {
            "key": self._key,
            "label": self._label,
            "icon": self._icon,
            "variant": self._variant,
            "color": self._color,
            "visibility": self._visibility,
            "ability": self._ability,
            "confirmation": self._confirmation,
            "modal": self._modal,
            "execute": self._execute,
        }


class Action(_ActionBuilder):
    def __init__(self, key: str, label: str):
        super().__init__(key, label)
        self._route: str | Callable[[Any], str] | None = None

    def route(self, route: str | Callable[[Any], str]) -> Action:
        self._route = route
        return self

    def build(self) -> ActionItem:
        return ActionItem(route=self._route, **self._item_kwargs())


class BulkAction(_ActionBuilder):
    def build(self) -> BulkActionItem:
        return BulkActionItem(**self._item_kwargs())


def _built(item: Any) -> Any:
    return item.build() if hasattr(item, "build") else item


class Definition:
    """Ordered columns, filters and actions for one table render pass."""

    def __init__(self) -> None:
        self._columns: list[ColumnItem] = []
        self._filters: list[FilterItem] = []
        self._row_actions: list[ActionItem] = []
        self._bulk_actions: list[BulkActionItem] = []

    @classmethod
    def make(cls) -> Definition:
        return cls()

    def columns(self, *items: Column | ColumnItem) -> Definition:
        self._columns.extend(_built(item) for item in items)
        return self

    def filters(self, *items: Filter | FilterItem) -> Definition:
        self._filters.extend(_built(item) for item in items)
        return self

    def actions(self, *items: Action | ActionItem) -> Definition:
        self._row_actions.extend(_built(item) for item in items)
        return self

    def bulk_actions(self, *items: BulkAction | BulkActionItem) -> Definition:
        self._bulk_actions.extend(_built(item) for item in items)
        return self

    @property
    def all_columns(self) -> tuple[ColumnItem, ...]:
        return tuple(self._columns)

    @property
    def all_filters(self) -> tuple[FilterItem, ...]:
        return tuple(self._filters)

    @property
    def all_row_actions(self) -> tuple[ActionItem, ...]:
        return tuple(self._row_actions)

    @property
    def all_bulk_actions(self) -> tuple[BulkActionItem, ...]:
        return tuple(self._bulk_actions)

    def column(self, key: str) -> ColumnItem | None:
        return next((item for item in self._columns if item.key == key), None)

    def filter(self, key: str) -> FilterItem | None:
        return next((item for item in self._filters if item.key == key), None)

    def row_action(self, key: str) -> ActionItem | None:
        return next((item for item in self._row_actions if item.key == key), None)

    def bulk_action(self, key: str) -> BulkActionItem | None:
        return next((item for item in self._bulk_actions if item.key == key), None)

    @property
    def filterable_keys(self) -> frozenset[str]:
        return frozenset(item.key for item in self._filters)

    @property
    def searchable_fields(self) -> tuple[str, ...]:
        return tuple(item.key for item in self._columns if item.searchable)

    @property
    def sortable_fields(self) -> tuple[str, ...]:
        return tuple(item.key for item in self._columns if item.sortable)

    def visible_columns(self, row: Any = None) -> list[ColumnItem]:
        return [item for item in self._columns if item.is_visible(row)]

    def visible_filters(self, context: Any = None) -> list[FilterItem]:
        return [item for item in self._filters if item.is_visible(context)]

    def row_actions_for(self, row: Any, ctx: RequestContext) -> list[dict[str, Any]]:
        return [
            action.to_transport(row)
            for action in self._row_actions
            if action.is_visible(row, ctx)
        ]

    def visible_bulk_actions(self, ctx: RequestContext) -> list[BulkActionItem]:
        return [action for action in self._bulk_actions if action.is_visible(None, ctx)]

    def to_transport(self, ctx: RequestContext) -> dict[str, Any]:
        return {
            "columns": [item.to_transport() for item in self.visible_columns()],
            "filters": [item.to_transport(ctx) for item in self.visible_filters(ctx)],
            "row_actions": [
                action.to_transport() for action in self._row_actions if ctx.can(action.ability)
            ],
            "bulk_actions": [action.to_transport() for action in self.visible_bulk_actions(ctx)],
        }
