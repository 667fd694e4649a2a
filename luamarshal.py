"""LuaJIT FFI marshalling generator.

Generates C layout declarations and Lua conversion functions for values that
cross the boundary between a natively-compiled library and LuaJIT. Produces a
`<stem>.h` header and a `<stem>.lua` module under the output directory.

Usage:
    python luamarshal.py --type "Vec<Option<f32>>" String --output-dir generated
"""

import argparse
import re
import textwrap
import xml.etree.ElementTree as ET
from collections import defaultdict
from collections.abc import Callable, Hashable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from functools import partial
from pathlib import Path
from types import MappingProxyType
from typing import TypeVar

DEFAULT_OUTPUT_DIR = Path("generated")
DEFAULT_STEM = "marshalling"


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    types: tuple[str, ...]
    manifest: Path | None
    output_dir: Path
    stem: str


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    type_expr: str | None
    manifest: Path | None


VALID_ERROR_CODES = {
    "MISSING_TYPE",
    "INVALID_TYPE",
    "INVALID_STEM",
    "INVALID_MANIFEST",
    "CONFLICT_GENERATE_DISCOVERY",
    "PATH_NOT_FOUND",
}
_STEM_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_stem(stem: str) -> str:
    if _STEM_RE.match(stem):
        return stem
    raise ConfigError(
        "INVALID_STEM",
        f"Invalid output stem: {stem!r}",
        "Use letters, digits, '_' or '-' (for example --stem marshalling).",
    )


def validate_manifest_path(path: Path) -> Path:
    if not path.exists():
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"Manifest does not exist: {path}",
            "Pass an existing XML file: --manifest types.xml",
        )
    if not path.is_file():
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"Manifest is not a file: {path}",
            "Point --manifest at the XML file, not its directory.",
        )
    return path


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate LuaJIT FFI marshalling code for native types"
    )

    parser.add_argument(
        "--type", dest="types", action="append", nargs="+", default=None
    )
    parser.add_argument("--manifest", type=Path, default=None)
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR)
    parser.add_argument("--stem", type=str, default=DEFAULT_STEM)

    discovery_group = parser.add_mutually_exclusive_group()
    discovery_group.add_argument(
        "--list-primitives", action="store_true", default=False
    )
    discovery_group.add_argument("--info", type=str, default=None)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def normalize_types(raw_types: list[list[str]] | None) -> tuple[str, ...]:
    """Flatten repeated `--type A B --type C` groups into one root list.

    Surrounding whitespace is dropped and repeated roots keep their first
    position.
    """
    if raw_types is None:
        return tuple()
    exprs = [expr.strip() for group in raw_types for expr in group]
    if not all(exprs):
        raise ConfigError(
            "INVALID_TYPE",
            "Empty type expression passed to --type.",
            'Pass type expressions as --type "Vec<u8>".',
        )
    return tuple(dict.fromkeys(exprs))


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    raw_types = normalize_types(args.types)
    has_discovery_command = bool(args.list_primitives or args.info)

    if raw_types and has_discovery_command:
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "Generate flags cannot be combined with discovery flags.",
            "Choose either --type (generate mode) or one discovery command.",
        )

    manifest = None
    if args.manifest is not None:
        manifest = validate_manifest_path(args.manifest)

    if has_discovery_command:
        command = "list-primitives" if args.list_primitives else "info"
        return DiscoveryConfig(
            command=command,
            type_expr=args.info,
            manifest=manifest,
        )

    if not raw_types:
        raise ConfigError(
            "MISSING_TYPE",
            "Generate mode requires at least one --type.",
            'Pass one or more root types, for example --type "Vec<u8>" String.',
        )

    return GenerateConfig(
        types=raw_types,
        manifest=manifest,
        output_dir=args.output_dir,
        stem=validate_stem(args.stem),
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Constants ---=== #

PRIMITIVE_C_TYPES = {
    "i8": "int8_t",
    "i16": "int16_t",
    "i32": "int32_t",
    "i64": "int64_t",
    "u8": "uint8_t",
    "u16": "uint16_t",
    "u32": "uint32_t",
    "u64": "uint64_t",
    "f32": "float",
    "f64": "double",
}

STRING_TYPENAME = "__string_ptr"
STR_TYPENAME = "_str_ptr__"
TEXT_C_TYPE = "char *"

IDENTITY_FUNCTION = "function(value) return value end"

RESERVED_TYPE_NAMES = frozenset(PRIMITIVE_C_TYPES) | {
    "String",
    "Option",
    "Vec",
    "str",
    STRING_TYPENAME,
    STR_TYPENAME,
}
RESERVED_TYPENAME_PREFIXES = ("Option_", "Vec_", "Slice_")


# ===--- Errors ---=== #

VALID_GENERATION_ERROR_CODES = {
    "CYCLIC_DEPENDENCY",
    "UNSUPPORTED_NESTING",
    "MISSING_CAPABILITY",
    "UNKNOWN_TYPE",
}


class GenerationError(Exception):
    """Build-time defect in the requested type declarations.

    Raised while producing text; nothing is written once one is raised.
    """

    def __init__(self, code: str, message: str):
        if code not in VALID_GENERATION_ERROR_CODES:
            raise ValueError(f"Unknown generation error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message


class CyclicDependencyError(GenerationError):
    def __init__(self, remaining: Iterable[str]):
        self.remaining = tuple(sorted(remaining))
        super().__init__(
            "CYCLIC_DEPENDENCY",
            f"Cyclic type dependency among: {', '.join(self.remaining)}",
        )


class UnsupportedNestingError(GenerationError):
    def __init__(self, message: str):
        super().__init__("UNSUPPORTED_NESTING", message)


class MissingCapabilityError(GenerationError):
    def __init__(self, message: str):
        super().__init__("MISSING_CAPABILITY", message)


class UnknownTypeError(GenerationError):
    def __init__(self, message: str):
        super().__init__("UNKNOWN_TYPE", message)


# ===--- Type identity ---=== #


class TypeKind(Enum):
    PRIMITIVE = "primitive"
    OPTION = "option"
    VEC = "vec"
    SLICE = "slice"
    STRING = "string"
    STR = "str"
    USER = "user"


CONTAINER_KINDS = frozenset({TypeKind.OPTION, TypeKind.VEC, TypeKind.SLICE})
NAMED_KINDS = frozenset({TypeKind.PRIMITIVE, TypeKind.USER})


@dataclass(frozen=True)
class TypeRef:
    """Stable identity of one concrete type at the FFI boundary.

    Equality is structural: two refs are equal iff they have the same kind,
    name and element instantiation, so `Vec<u8>` built twice is one key.

    Attributes:
        kind: Variant tag.
        name: Primitive name ("u8") or user type name. None otherwise.
        element: Element type for Option / Vec / Slice. None otherwise.
    """

    kind: TypeKind
    name: str | None = None
    element: "TypeRef | None" = None

    def __post_init__(self) -> None:
        if self.kind in CONTAINER_KINDS:
            if self.element is None or self.name is not None:
                raise ValueError(f"{self.kind.value} requires exactly an element type")
        elif self.element is not None:
            raise ValueError(f"{self.kind.value} does not take an element type")

        if self.kind in NAMED_KINDS:
            if not self.name:
                raise ValueError(f"{self.kind.value} requires a name")
            if self.kind is TypeKind.PRIMITIVE and self.name not in PRIMITIVE_C_TYPES:
                raise ValueError(f"Unknown primitive type: {self.name}")
        elif self.kind not in CONTAINER_KINDS and self.name is not None:
            raise ValueError(f"{self.kind.value} does not take a name")

    def __str__(self) -> str:
        return format_type_expr(self)


def primitive(name: str) -> TypeRef:
    return TypeRef(TypeKind.PRIMITIVE, name=name)


def option(element: TypeRef) -> TypeRef:
    return TypeRef(TypeKind.OPTION, element=element)


def vec(element: TypeRef) -> TypeRef:
    return TypeRef(TypeKind.VEC, element=element)


def slice_of(element: TypeRef) -> TypeRef:
    return TypeRef(TypeKind.SLICE, element=element)


def user(name: str) -> TypeRef:
    return TypeRef(TypeKind.USER, name=name)


STRING = TypeRef(TypeKind.STRING)
STR = TypeRef(TypeKind.STR)


def format_type_expr(ref: TypeRef) -> str:
    if ref.kind is TypeKind.OPTION:
        return f"Option<{format_type_expr(ref.element)}>"
    if ref.kind is TypeKind.VEC:
        return f"Vec<{format_type_expr(ref.element)}>"
    if ref.kind is TypeKind.SLICE:
        return f"&[{format_type_expr(ref.element)}]"
    if ref.kind is TypeKind.STRING:
        return "String"
    if ref.kind is TypeKind.STR:
        return "&str"
    return ref.name


# ===--- Type expression parsing ---=== #

_TYPE_TOKEN_RE = re.compile(r"\s*('?[A-Za-z_][A-Za-z0-9_]*|\S)")
_TYPE_EXPR_HINT = "Use forms like u8, String, &str, Option<T>, Vec<T> or &[T]."


class _TypeExprParser:
    def __init__(self, text: str, user_types: frozenset[str]):
        self.text = text
        self.tokens = _TYPE_TOKEN_RE.findall(text)
        self.pos = 0
        self.user_types = user_types

    def fail(self, detail: str) -> ConfigError:
        return ConfigError(
            "INVALID_TYPE",
            f"Invalid type expression {self.text!r}: {detail}",
            _TYPE_EXPR_HINT,
        )

    def peek(self) -> str | None:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def take(self) -> str:
        token = self.peek()
        if token is None:
            raise self.fail("unexpected end of expression")
        self.pos += 1
        return token

    def expect(self, token: str) -> None:
        found = self.take()
        if found != token:
            raise self.fail(f"expected {token!r}, found {found!r}")

    def parse(self) -> TypeRef:
        ref = self.parse_type()
        if self.peek() is not None:
            raise self.fail(f"unexpected trailing {self.peek()!r}")
        return ref

    def parse_type(self) -> TypeRef:
        token = self.take()
        if token == "&":
            if (self.peek() or "").startswith("'"):
                self.take()
            if self.peek() == "str":
                self.take()
                return STR
            self.expect("[")
            element = self.parse_type()
            self.expect("]")
            return slice_of(element)

        if token in PRIMITIVE_C_TYPES:
            return primitive(token)
        if token == "String":
            return STRING
        if token in ("Option", "Vec"):
            self.expect("<")
            element = self.parse_type()
            self.expect(">")
            return option(element) if token == "Option" else vec(element)
        if token in self.user_types:
            return user(token)
        if _IDENT_RE.match(token):
            raise self.fail(f"unknown type name {token!r}")
        raise self.fail(f"unexpected {token!r}")


def parse_type_expr(text: str, user_types: Iterable[str] = ()) -> TypeRef:
    """Parse a Rust-style type expression into a TypeRef.

    Lifetimes on references (`&'a str`, `&'a [u8]`) are accepted and dropped.

    Raises:
        ConfigError: INVALID_TYPE on any syntax error or unknown name.
    """
    if not text.strip():
        raise ConfigError("INVALID_TYPE", "Empty type expression.", _TYPE_EXPR_HINT)
    return _TypeExprParser(text, frozenset(user_types)).parse()


# ===--- Type descriptors ---=== #


@dataclass(frozen=True)
class TypeDescription:
    """Identity and layout producers for one marshallable type.

    The text fields are zero-argument producers so a mapping can be built and
    sorted without rendering anything.

    Attributes:
        typeid: Identity of the described type.
        dependencies: Identities this type's layout references. Never
            contains typeid itself.
        typedeclaration: Produces the C struct declaration, "" if none.
        metatype: Produces the `ffi.metatype` binding statement, "" if none.
    """

    typeid: TypeRef
    dependencies: frozenset[TypeRef]
    typedeclaration: Callable[[], str]
    metatype: Callable[[], str]


Dependencies = dict[TypeRef, TypeDescription]


@dataclass(frozen=True)
class FromRawConversion:
    """Raw -> Lua conversion producers for one type.

    Attributes:
        typeid: Identity of the converted type.
        function: Lua function source converting the raw value.
        c_mut_function_argument: C parameter form when native code writes
            output back through this type.
        gc: True iff the converted value must register a finalizer that
            releases the native storage.
    """

    typeid: TypeRef
    function: Callable[[], str]
    c_mut_function_argument: Callable[[], str]
    gc: Callable[[], bool]


@dataclass(frozen=True)
class IntoRawConversion:
    """Lua -> raw conversion producers for one type.

    Attributes:
        typeid: Identity of the converted type.
        function: Lua function source producing the raw value.
        c_function_argument: C parameter form when passing this type as input.
        to_pointer: Lua function source producing a pointer to one instance.
        to_array: Lua function source producing a native array of instances.
    """

    typeid: TypeRef
    function: Callable[[], str]
    c_function_argument: Callable[[], str]
    to_pointer: Callable[[], str]
    to_array: Callable[[], str]


# ===--- User-defined types ---=== #


@dataclass(frozen=True)
class UserTypeDef:
    """Capability texts for an aggregate type supplied from outside.

    Attributes:
        name: Canonical Lua-facing name.
        c_name: C-facing name used in layouts of containing types.
        declaration: C struct declaration, "" if none.
        metatype: Lua binding statement, "" if none.
        dependencies: Types referenced by the declaration.
        from_raw_function: Raw -> Lua function source, None if unsupported.
        into_raw_function: Lua -> raw function source, None if unsupported.
        gc: Whether raw -> Lua results need a finalizer.
    """

    name: str
    c_name: str
    declaration: str = ""
    metatype: str = ""
    dependencies: tuple[TypeRef, ...] = ()
    from_raw_function: str | None = None
    into_raw_function: str | None = None
    gc: bool = False


# ===--- Capability providers ---=== #


def lua_metatype(name: str) -> str:
    return f'local {name} = ffi.metatype("{name}", {{}})'


class TypeProvider:
    """Capability implementation shared by every type with one variant tag.

    Every method is a pure function of (registry, ref). The default
    Describable capability has no layout, no binding and no dependencies;
    the conversion capabilities are absent unless a subclass provides them.
    """

    def typename(self, registry: "ProviderRegistry", ref: TypeRef) -> str:
        raise NotImplementedError

    def c_typename(self, registry: "ProviderRegistry", ref: TypeRef) -> str:
        return self.typename(registry, ref)

    def typedeclaration(self, registry: "ProviderRegistry", ref: TypeRef) -> str:
        return ""

    def metatype(self, registry: "ProviderRegistry", ref: TypeRef) -> str:
        return ""

    def dependencies(self, registry: "ProviderRegistry", ref: TypeRef) -> Dependencies:
        return {}

    def has_from_raw(self, registry: "ProviderRegistry", ref: TypeRef) -> bool:
        return False

    def has_into_raw(self, registry: "ProviderRegistry", ref: TypeRef) -> bool:
        return False

    # Raw -> Lua

    def from_raw_function(self, registry, ref) -> str:
        raise self.missing_capability(registry, ref, "raw->Lua")

    def c_mut_function_argument(self, registry, ref) -> str:
        raise self.missing_capability(registry, ref, "raw->Lua")

    def gc(self, registry, ref) -> bool:
        raise self.missing_capability(registry, ref, "raw->Lua")

    # Lua -> raw

    def into_raw_function(self, registry, ref) -> str:
        raise self.missing_capability(registry, ref, "Lua->raw")

    def c_function_argument(self, registry, ref) -> str:
        raise self.missing_capability(registry, ref, "Lua->raw")

    def to_pointer(self, registry, ref) -> str:
        raise self.missing_capability(registry, ref, "Lua->raw")

    def to_array(self, registry, ref) -> str:
        raise self.missing_capability(registry, ref, "Lua->raw")

    def missing_capability(self, registry, ref, direction: str) -> MissingCapabilityError:
        return MissingCapabilityError(
            f"{format_type_expr(ref)} has no {direction} conversion"
        )


class PrimitiveProvider(TypeProvider):
    def typename(self, registry, ref):
        return ref.name

    def c_typename(self, registry, ref):
        return PRIMITIVE_C_TYPES[ref.name]

    def has_from_raw(self, registry, ref):
        return True

    def has_into_raw(self, registry, ref):
        return True

    def from_raw_function(self, registry, ref):
        return IDENTITY_FUNCTION

    def c_mut_function_argument(self, registry, ref):
        return self.c_typename(registry, ref)

    def gc(self, registry, ref):
        return False

    def into_raw_function(self, registry, ref):
        return IDENTITY_FUNCTION

    def c_function_argument(self, registry, ref):
        return self.c_typename(registry, ref)

    def to_pointer(self, registry, ref):
        return primitive_type_to_pointer(registry, ref)

    def to_array(self, registry, ref):
        return primitive_type_to_array(registry, ref)


class _ContainerProvider(TypeProvider):
    """Shared behavior of Option / Vec / Slice.

    A container's canonical name is its prefix plus the element's canonical
    name, and it depends on the element plus the element's own closure.
    """

    prefix = ""

    def typename(self, registry, ref):
        return f"{self.prefix}_{typename(registry, ref.element)}"

    def metatype(self, registry, ref):
        return lua_metatype(self.typename(registry, ref))

    def dependencies(self, registry, ref):
        return make_dependencies(registry, ref.element)

    def has_from_raw(self, registry, ref):
        return registry.provider(ref.element).has_from_raw(registry, ref.element)

    def has_into_raw(self, registry, ref):
        return registry.provider(ref.element).has_into_raw(registry, ref.element)

    def c_mut_function_argument(self, registry, ref):
        return f"{self.c_typename(registry, ref)}*"

    def c_function_argument(self, registry, ref):
        return f"const {self.c_typename(registry, ref)}*"

    def to_pointer(self, registry, ref):
        return ptr_type_to_pointer(registry, ref)


class OptionProvider(_ContainerProvider):
    prefix = "Option"

    def typedeclaration(self, registry, ref):
        return f"""typedef struct {{
    const {c_typename(registry, ref.element)} *ptr;
}} {self.typename(registry, ref)};"""

    def from_raw_function(self, registry, ref):
        element = from_raw_conversion(registry, ref.element)
        return f"""function(value)
    return value.ptr ~= nil and invoke(value.ptr[0], {element.function()}) or nil
end"""

    def gc(self, registry, ref):
        return True

    def into_raw_function(self, registry, ref):
        element = into_raw_conversion(registry, ref.element)
        return f"""
function(value)
    return {self.typename(registry, ref)}(value ~= nil and invoke(value, {element.to_pointer()}) or nil)
end
"""

    def to_array(self, registry, ref):
        raise UnsupportedNestingError(
            f"Arrays of {format_type_expr(ref)} are unsupported: a flat array "
            "cannot tell an absent element from a present one"
        )


class VecProvider(_ContainerProvider):
    prefix = "Vec"

    def typedeclaration(self, registry, ref):
        return f"""typedef struct {{
    const {c_typename(registry, ref.element)} *ptr;
    uint64_t len;
    uint64_t capacity;
}} {self.typename(registry, ref)};"""

    def from_raw_function(self, registry, ref):
        element = from_raw_conversion(registry, ref.element)
        return f"""function(value)
    local ret = {{}}
    local len = tonumber(value.len)
    for i = 1,len do
        ret[i] = invoke(value.ptr[i - 1], {element.function()})
    end
    return ret
end"""

    def gc(self, registry, ref):
        return True

    def into_raw_function(self, registry, ref):
        element = into_raw_conversion(registry, ref.element)
        return f"""
function(value)
    return {self.typename(registry, ref)}(invoke(value, {element.to_array()}), #value, 0)
end
"""

    def to_array(self, registry, ref):
        return immediate_type_to_array(registry, ref)


class SliceProvider(_ContainerProvider):
    """Borrowed view: written toward native code only, never read back."""

    prefix = "Slice"

    def typedeclaration(self, registry, ref):
        return f"""typedef struct {{
    const {c_typename(registry, ref.element)} *ptr;
    uint64_t len;
}} {self.typename(registry, ref)};"""

    def has_from_raw(self, registry, ref):
        return False

    def c_mut_function_argument(self, registry, ref):
        raise self.missing_capability(registry, ref, "raw->Lua")

    def into_raw_function(self, registry, ref):
        name = self.typename(registry, ref)
        element = into_raw_conversion(registry, ref.element)
        if ref.element == primitive("u8"):
            # Lua strings are passed through as byte buffers.
            return f"""function(value)
    if type(value) == "string" then
        return {name}(value, #value)
    else
        local result = {{}}
        for i, value in pairs(value) do
            result[i] = value
        end
        return {name}(ffi.new("{element.c_function_argument()}[?]", #result, result), #result)
    end
end"""
        if ref.element.kind is TypeKind.PRIMITIVE:
            return f"""function(value)
    local result = {{}}
    for i, value in pairs(value) do
        result[i] = value
    end
    return {name}(ffi.new("{element.c_function_argument()}[?]", #result, result), #result)
end"""
        return f"""function(value)
    return {name}(invoke(value, {element.to_array()}), #value)
end"""

    def to_array(self, registry, ref):
        return ptr_type_to_array(registry, ref)


class _TextProvider(TypeProvider):
    def c_typename(self, registry, ref):
        return TEXT_C_TYPE

    def has_into_raw(self, registry, ref):
        return True

    def into_raw_function(self, registry, ref):
        return IDENTITY_FUNCTION

    def c_function_argument(self, registry, ref):
        return f"const {self.c_typename(registry, ref)}"

    def to_pointer(self, registry, ref):
        return primitive_type_to_pointer(registry, ref)

    def to_array(self, registry, ref):
        return primitive_type_to_array(registry, ref)


class StringProvider(_TextProvider):
    """Owned text buffer; ownership moves to Lua on raw->Lua conversion."""

    def typename(self, registry, ref):
        return STRING_TYPENAME

    def has_from_raw(self, registry, ref):
        return True

    def from_raw_function(self, registry, ref):
        return "ffi.string"

    def c_mut_function_argument(self, registry, ref):
        return self.c_typename(registry, ref)

    def gc(self, registry, ref):
        return True


class StrProvider(_TextProvider):
    def typename(self, registry, ref):
        return STR_TYPENAME


class UserTypeProvider(TypeProvider):
    def typename(self, registry, ref):
        return registry.user_type(ref.name).name

    def c_typename(self, registry, ref):
        return registry.user_type(ref.name).c_name

    def typedeclaration(self, registry, ref):
        return registry.user_type(ref.name).declaration

    def metatype(self, registry, ref):
        return registry.user_type(ref.name).metatype

    def dependencies(self, registry, ref):
        merged: Dependencies = {}
        for dependency in registry.user_type(ref.name).dependencies:
            merged.update(make_dependencies(registry, dependency))
        return merged

    def has_from_raw(self, registry, ref):
        return registry.user_type(ref.name).from_raw_function is not None

    def has_into_raw(self, registry, ref):
        return registry.user_type(ref.name).into_raw_function is not None

    def from_raw_function(self, registry, ref):
        function = registry.user_type(ref.name).from_raw_function
        if function is None:
            raise self.missing_capability(registry, ref, "raw->Lua")
        return function

    def c_mut_function_argument(self, registry, ref):
        if not self.has_from_raw(registry, ref):
            raise self.missing_capability(registry, ref, "raw->Lua")
        return f"{self.c_typename(registry, ref)}*"

    def gc(self, registry, ref):
        if not self.has_from_raw(registry, ref):
            raise self.missing_capability(registry, ref, "raw->Lua")
        return registry.user_type(ref.name).gc

    def into_raw_function(self, registry, ref):
        function = registry.user_type(ref.name).into_raw_function
        if function is None:
            raise self.missing_capability(registry, ref, "Lua->raw")
        return function

    def c_function_argument(self, registry, ref):
        if not self.has_into_raw(registry, ref):
            raise self.missing_capability(registry, ref, "Lua->raw")
        return f"const {self.c_typename(registry, ref)}*"

    def to_pointer(self, registry, ref):
        return ptr_type_to_pointer(registry, ref)

    def to_array(self, registry, ref):
        return ptr_type_to_array(registry, ref)


# ===--- Composite helper generators ---=== #


def ptr_type_to_pointer(registry: "ProviderRegistry", ref: TypeRef) -> str:
    """Pointer-backed types already produce a pointer-like cdata value."""
    return into_raw_conversion(registry, ref).function()


def ptr_type_to_array(registry: "ProviderRegistry", ref: TypeRef) -> str:
    return f"""function(value)
    local result = {{}}
    for i, value in pairs(value) do
        local tmp = invoke(value, {into_raw_conversion(registry, ref).function()})
        result[i] = tmp[0]
    end
    return ffi.new("const {c_typename(registry, ref)}[?]", #result, result)
end"""


def immediate_type_to_array(registry: "ProviderRegistry", ref: TypeRef) -> str:
    return f"""function(value)
    local result = {{}}
    for i, value in pairs(value) do
        local tmp = invoke(value, {into_raw_conversion(registry, ref).function()})
        result[i] = tmp
    end
    return ffi.new("const {c_typename(registry, ref)}[?]", #result, result)
end"""


def primitive_type_to_pointer(registry: "ProviderRegistry", ref: TypeRef) -> str:
    return f"""function(value)
    return ffi.new("const {c_typename(registry, ref)}[1]", {{ value }})
end"""


def primitive_type_to_array(registry: "ProviderRegistry", ref: TypeRef) -> str:
    return f"""function(value)
    return ffi.new("const {c_typename(registry, ref)}[?]", #value, value)
end"""


# ===--- Provider registry ---=== #


@dataclass(frozen=True)
class ProviderRegistry:
    """Variant-tag -> provider table plus the known user-defined types.

    Constructed once per run by build_registry and passed explicitly to every
    stage. Both mappings are read-only views.

    Attributes:
        providers: Provider for each TypeKind.
        user_types: User type definitions by name.
    """

    providers: Mapping[TypeKind, TypeProvider]
    user_types: Mapping[str, UserTypeDef]

    def provider(self, ref: TypeRef) -> TypeProvider:
        provider = self.providers.get(ref.kind)
        if provider is None:
            raise UnknownTypeError(f"No provider registered for {ref.kind.value} types")
        if ref.kind is TypeKind.USER:
            self.user_type(ref.name)
        return provider

    def user_type(self, name: str) -> UserTypeDef:
        user_type = self.user_types.get(name)
        if user_type is None:
            raise UnknownTypeError(f"Unknown user type: {name}")
        return user_type


def default_providers() -> dict[TypeKind, TypeProvider]:
    return {
        TypeKind.PRIMITIVE: PrimitiveProvider(),
        TypeKind.OPTION: OptionProvider(),
        TypeKind.VEC: VecProvider(),
        TypeKind.SLICE: SliceProvider(),
        TypeKind.STRING: StringProvider(),
        TypeKind.STR: StrProvider(),
        TypeKind.USER: UserTypeProvider(),
    }


def _referenced_user_types(ref: TypeRef) -> Iterable[str]:
    while ref is not None:
        if ref.kind is TypeKind.USER:
            yield ref.name
        ref = ref.element


def check_user_type_name(name: str) -> None:
    if not _IDENT_RE.match(name):
        raise ValueError(f"Invalid user type name: {name!r}")
    if name in RESERVED_TYPE_NAMES or name.startswith(RESERVED_TYPENAME_PREFIXES):
        raise ValueError(f"User type name collides with a built-in type: {name}")


def build_registry(user_types: Iterable[UserTypeDef] = ()) -> ProviderRegistry:
    """Construct the provider registry for one generation run.

    Validates user type names and rejects user types whose dependencies
    refer to unknown user types or form a cycle, so make_dependencies never
    recurses without bound.

    Raises:
        ValueError: Invalid, reserved or duplicate user type name.
        UnknownTypeError: A dependency names an undeclared user type.
        CyclicDependencyError: User type dependencies form a cycle.
    """
    by_name: dict[str, UserTypeDef] = {}
    for user_type in user_types:
        check_user_type_name(user_type.name)
        if user_type.name in by_name:
            raise ValueError(f"Duplicate user type: {user_type.name}")
        by_name[user_type.name] = user_type

    user_deps: dict[str, frozenset[str]] = {}
    for user_type in by_name.values():
        names: set[str] = set()
        for dependency in user_type.dependencies:
            names.update(_referenced_user_types(dependency))
        unknown = names - by_name.keys()
        if unknown:
            raise UnknownTypeError(
                f"User type {user_type.name} depends on unknown types: "
                f"{', '.join(sorted(unknown))}"
            )
        user_deps[user_type.name] = frozenset(names)
    topo_order(user_deps, key=str, render=str)

    return ProviderRegistry(
        providers=MappingProxyType(default_providers()),
        user_types=MappingProxyType(by_name),
    )


# ===--- Capability dispatch ---=== #


def typename(registry: ProviderRegistry, ref: TypeRef) -> str:
    return registry.provider(ref).typename(registry, ref)


def c_typename(registry: ProviderRegistry, ref: TypeRef) -> str:
    return registry.provider(ref).c_typename(registry, ref)


def from_raw_conversion(registry: ProviderRegistry, ref: TypeRef) -> FromRawConversion:
    """Return the raw -> Lua producers for ref.

    Raises:
        MissingCapabilityError: ref cannot be read back from native code
            (borrowed slices, &str, or containers of them).
    """
    provider = registry.provider(ref)
    if not provider.has_from_raw(registry, ref):
        raise provider.missing_capability(registry, ref, "raw->Lua")
    return FromRawConversion(
        typeid=ref,
        function=partial(provider.from_raw_function, registry, ref),
        c_mut_function_argument=partial(provider.c_mut_function_argument, registry, ref),
        gc=partial(provider.gc, registry, ref),
    )


def into_raw_conversion(registry: ProviderRegistry, ref: TypeRef) -> IntoRawConversion:
    """Return the Lua -> raw producers for ref.

    Producers are evaluated lazily: an unsupported combination such as an
    array of Option only fails when that text is requested.

    Raises:
        MissingCapabilityError: ref cannot be written toward native code.
    """
    provider = registry.provider(ref)
    if not provider.has_into_raw(registry, ref):
        raise provider.missing_capability(registry, ref, "Lua->raw")
    return IntoRawConversion(
        typeid=ref,
        function=partial(provider.into_raw_function, registry, ref),
        c_function_argument=partial(provider.c_function_argument, registry, ref),
        to_pointer=partial(provider.to_pointer, registry, ref),
        to_array=partial(provider.to_array, registry, ref),
    )


# ===--- Dependency graph ---=== #


def make_dependencies(registry: ProviderRegistry, ref: TypeRef) -> Dependencies:
    """Build the dependency mapping for ref.

    The result holds ref's own descriptor plus one descriptor per type in
    its transitive closure. ref's descriptor records the keys of the
    sub-mapping its provider supplied, which never include ref itself.

    Args:
        registry: Provider registry for the run.
        ref: Root type.

    Returns:
        Fresh mapping owned by the caller.

    Raises:
        UnknownTypeError: ref or a dependency has no provider.
        CyclicDependencyError: The provider reported ref as its own dependency.
    """
    provider = registry.provider(ref)
    dependencies = dict(provider.dependencies(registry, ref))
    if ref in dependencies:
        raise CyclicDependencyError([format_type_expr(ref)])
    type_dependencies = frozenset(dependencies)
    dependencies[ref] = TypeDescription(
        typeid=ref,
        dependencies=type_dependencies,
        typedeclaration=partial(provider.typedeclaration, registry, ref),
        metatype=partial(provider.metatype, registry, ref),
    )
    return dependencies


def collect_dependencies(
    registry: ProviderRegistry, roots: Iterable[TypeRef]
) -> Dependencies:
    """Union of make_dependencies over several roots.

    Structurally equal types collapse into one entry regardless of how many
    roots reach them.
    """
    merged: Dependencies = {}
    for root in roots:
        merged.update(make_dependencies(registry, root))
    return merged


# ===--- Dependency ordering ---=== #

KeyT = TypeVar("KeyT", bound=Hashable)


def topo_order(
    deps: Mapping[KeyT, Iterable[KeyT]],
    key: Callable[[KeyT], str],
    render: Callable[[KeyT], str],
) -> list[KeyT]:
    """Order deps' keys so every key follows all of its dependencies.

    Among keys that are ready at the same time the smallest key() goes
    first. Dependencies that are not keys of deps are ignored.

    Raises:
        CyclicDependencyError: No key can be emitted; carries render() of
            every unresolved key.
    """
    in_degree = {node: 0 for node in deps}
    adj = defaultdict(list)
    for node, node_deps in deps.items():
        for dep in set(node_deps):
            if dep in in_degree:
                adj[dep].append(node)
                in_degree[node] += 1

    queue = [node for node, degree in in_degree.items() if degree == 0]
    result = []
    while queue:
        queue.sort(key=key)
        node = queue.pop(0)
        result.append(node)
        for neighbor in adj[node]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(result) != len(in_degree):
        emitted = set(result)
        raise CyclicDependencyError(render(node) for node in deps if node not in emitted)

    return result


def dependency_sorted_type_descriptions(
    dependencies: Mapping[TypeRef, TypeDescription],
) -> list[TypeDescription]:
    """Return descriptors so that each follows every type it depends on.

    Ties are broken by the type expression (`Vec<u8>` before `u8`), so the
    order is reproducible across runs.

    Raises:
        CyclicDependencyError: The dependency relation has a cycle. No
            partial order is returned.
    """
    order = topo_order(
        {ref: desc.dependencies for ref, desc in dependencies.items()},
        key=format_type_expr,
        render=format_type_expr,
    )
    return [dependencies[ref] for ref in order]


# ===--- User type manifest ---=== #


def _manifest_text(elem: ET.Element, tag: str) -> str | None:
    child = elem.find(tag)
    if child is None:
        return None
    return textwrap.dedent(child.text or "").strip()


def _parse_manifest_bool(raw: str, type_name: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ConfigError(
        "INVALID_MANIFEST",
        f"Invalid gc flag {raw!r} for user type {type_name}",
        'Use gc="true" or gc="false".',
    )


def load_user_types(root: ET.Element) -> tuple[UserTypeDef, ...]:
    """Read user-defined type capability texts from a manifest root.

    Every `<type>` needs a `name`; `c_name` defaults to it. `<depends
    type="..."/>` entries may name any user type in the same manifest.

    Raises:
        ConfigError: INVALID_MANIFEST for missing or reserved names,
            duplicates, or bad gc flags; INVALID_TYPE for bad dependency
            expressions.
    """
    if root.tag != "types":
        raise ConfigError(
            "INVALID_MANIFEST",
            f"Manifest root must be <types>, found <{root.tag}>",
        )

    elems = root.findall("type")
    names: list[str] = []
    for elem in elems:
        name = elem.get("name")
        if not name:
            raise ConfigError("INVALID_MANIFEST", "<type> is missing a name attribute")
        try:
            check_user_type_name(name)
        except ValueError as err:
            raise ConfigError("INVALID_MANIFEST", str(err)) from err
        if name in names:
            raise ConfigError("INVALID_MANIFEST", f"Duplicate user type: {name}")
        names.append(name)

    user_types = []
    for elem, name in zip(elems, names):
        dependencies = tuple(
            parse_type_expr(dep.get("type", ""), names)
            for dep in elem.findall("depends")
        )
        from_raw = elem.find("from_raw")
        gc = False
        if from_raw is not None:
            gc = _parse_manifest_bool(from_raw.get("gc", "false"), name)
        user_types.append(
            UserTypeDef(
                name=name,
                c_name=elem.get("c_name", name),
                declaration=_manifest_text(elem, "declaration") or "",
                metatype=_manifest_text(elem, "metatype") or "",
                dependencies=dependencies,
                from_raw_function=_manifest_text(elem, "from_raw") or None,
                into_raw_function=_manifest_text(elem, "into_raw") or None,
                gc=gc,
            )
        )
    return tuple(user_types)


def load_manifest(path: Path) -> tuple[UserTypeDef, ...]:
    print(f"Parsing: {path}")
    return load_user_types(ET.parse(path).getroot())


# ===--- Shared run metadata ---=== #


@dataclass(frozen=True)
class WriteConfig:
    """Generation metadata embedded in every artifact preamble.

    Attributes:
        stem: Artifact filename stem; files are `<stem>.h` and `<stem>.lua`.
        roots: Requested root type expressions, in request order.
    """

    stem: str
    roots: tuple[str, ...]


@dataclass(frozen=True)
class RootBinding:
    """Conversions exported from the Lua module for one requested root.

    Either conversion is None when the root lacks that capability.
    """

    typeid: TypeRef
    typename: str
    from_raw: FromRawConversion | None
    into_raw: IntoRawConversion | None


@dataclass(frozen=True)
class ArtifactSpec:
    filename: str
    content: str


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing one generated file.

    Attributes:
        filename: Filename written, e.g. "marshalling.lua".
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


@dataclass(frozen=True)
class PackageWriteResult:
    output_dir: Path
    files: tuple[FileWriteResult, ...]

    @property
    def total_lines(self) -> int:
        """Sum of line_count across all written files."""
        return sum(f.line_count for f in self.files)


def build_root_bindings(
    registry: ProviderRegistry, roots: Iterable[TypeRef]
) -> tuple[RootBinding, ...]:
    bindings = []
    for root in roots:
        provider = registry.provider(root)
        from_raw = None
        if provider.has_from_raw(registry, root):
            from_raw = from_raw_conversion(registry, root)
        into_raw = None
        if provider.has_into_raw(registry, root):
            into_raw = into_raw_conversion(registry, root)
        bindings.append(
            RootBinding(
                typeid=root,
                typename=typename(registry, root),
                from_raw=from_raw,
                into_raw=into_raw,
            )
        )
    return tuple(bindings)


# ===--- Pure formatting functions ---=== #

_HEADER_BORDER: str = "x-------------------------------------------x"


def format_file_header(config: WriteConfig, comment: str) -> list[str]:
    """Return the boxed comment block that opens every generated artifact.

    Output format (comment="--"):
        -- x-------------------------------------------x --
        -- | LuaJIT FFI marshalling: marshalling
        -- | Generated by lua-marshalling-gen
        -- | Roots: Vec<u8>, String
        -- x-------------------------------------------x --

    Roots keep request order; they are what the caller asked for.

    Raises:
        ValueError: If config.roots is empty.
    """
    if not config.roots:
        raise ValueError("WriteConfig.roots must not be empty")

    border = f"{comment} {_HEADER_BORDER} {comment}"
    return [
        border,
        f"{comment} | LuaJIT FFI marshalling: {config.stem}",
        f"{comment} | Generated by lua-marshalling-gen",
        f"{comment} | Roots: {', '.join(config.roots)}",
        border,
    ]


def format_declarations(ordered: Iterable[TypeDescription]) -> list[str]:
    """Non-empty declarations in the given order, one blank line apart."""
    lines: list[str] = []
    for desc in ordered:
        declaration = desc.typedeclaration()
        if not declaration:
            continue
        if lines:
            lines.append("")
        lines.extend(declaration.splitlines())
    return lines


def assemble_header_source(
    config: WriteConfig, ordered: list[TypeDescription]
) -> str:
    """Assemble the C header with every layout in dependency order.

    File structure:
        <header_comment_block>
                                    <- blank line
        #pragma once
        #include <stdint.h>
                                    <- blank line
        <declarations>              <- omitted when there are none
                                    <- trailing newline
    """
    parts = list(format_file_header(config, "//"))
    parts.extend(["", "#pragma once", "#include <stdint.h>"])
    declarations = format_declarations(ordered)
    if declarations:
        parts.append("")
        parts.extend(declarations)
    return "\n".join(parts) + "\n"


def _lua_key(name: str) -> str:
    return f'["{name}"]'


def format_root_binding(binding: RootBinding) -> list[str]:
    key = _lua_key(binding.typename)
    lines: list[str] = []
    if binding.from_raw is not None:
        lines.append(f"M.from_raw{key} = {binding.from_raw.function().strip()}")
        lines.append(f"M.gc{key} = {'true' if binding.from_raw.gc() else 'false'}")
        lines.append(
            f'M.c_mut_function_argument{key} = "{binding.from_raw.c_mut_function_argument()}"'
        )
    if binding.into_raw is not None:
        lines.append(f"M.into_raw{key} = {binding.into_raw.function().strip()}")
        lines.append(
            f'M.c_function_argument{key} = "{binding.into_raw.c_function_argument()}"'
        )
    return lines


def assemble_lua_source(
    config: WriteConfig,
    ordered: list[TypeDescription],
    bindings: tuple[RootBinding, ...],
) -> str:
    """Assemble the Lua module for the run.

    File structure:
        <header_comment_block>
        local ffi = require("ffi")
        ffi.cdef[[ <declarations> ]]   <- omitted when there are none
        local function invoke(...)
        <metatype statements>          <- dependency order
        local M = { ... }
        <root bindings>                <- request order
        return M

    Every conversion text is rendered here, so an unsupported nesting fails
    before any file is written.
    """
    parts = list(format_file_header(config, "--"))
    parts.extend(["", 'local ffi = require("ffi")'])

    declarations = format_declarations(ordered)
    if declarations:
        parts.extend(["", "ffi.cdef[["])
        parts.extend(declarations)
        parts.append("]]")

    parts.extend(
        [
            "",
            "local function invoke(value, f)",
            "    return f(value)",
            "end",
        ]
    )

    metatypes = [desc.metatype() for desc in ordered]
    metatypes = [m for m in metatypes if m]
    if metatypes:
        parts.append("")
        parts.extend(metatypes)

    parts.extend(
        [
            "",
            "local M = {",
            "    from_raw = {},",
            "    into_raw = {},",
            "    gc = {},",
            "    c_function_argument = {},",
            "    c_mut_function_argument = {},",
            "}",
        ]
    )
    for binding in bindings:
        parts.append("")
        parts.extend(format_root_binding(binding))

    parts.extend(["", "return M"])
    return "\n".join(parts) + "\n"


def build_artifact_specs(
    config: WriteConfig,
    ordered: list[TypeDescription],
    bindings: tuple[RootBinding, ...],
) -> tuple[ArtifactSpec, ...]:
    return (
        ArtifactSpec(f"{config.stem}.h", assemble_header_source(config, ordered)),
        ArtifactSpec(f"{config.stem}.lua", assemble_lua_source(config, ordered, bindings)),
    )


# ===--- Writer I/O functions ---=== #


def write_artifact(output_dir: Path, spec: ArtifactSpec) -> FileWriteResult:
    """Write one artifact, creating output_dir if absent.

    Raises:
        OSError: Propagated directly if the filesystem write fails.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    file_path = output_dir / spec.filename
    file_path.write_text(spec.content, encoding="utf-8")
    resolved = file_path.resolve()
    return FileWriteResult(
        filename=spec.filename,
        path=resolved,
        line_count=spec.content.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


def write_artifacts(
    output_dir: Path, specs: tuple[ArtifactSpec, ...]
) -> PackageWriteResult:
    files = tuple(write_artifact(output_dir, spec) for spec in specs)
    return PackageWriteResult(output_dir=Path(output_dir), files=files)


# ===--- Pipeline ---=== #


def run_generate(config: GenerateConfig) -> PackageWriteResult:
    """Execute the generation pipeline for a GenerateConfig.

    Stages: manifest -> registry -> parse roots -> dependency mapping ->
    sort -> render -> write -> summary. Rendering completes before any
    file is written.

    Raises:
        ConfigError: Invalid manifest or root type expression.
        GenerationError: Cyclic dependency, unsupported nesting, missing
            capability or unknown type.
        OSError: Manifest not readable or filesystem write failure.
        ET.ParseError: Malformed manifest XML.
    """
    user_types = load_manifest(config.manifest) if config.manifest else ()
    try:
        registry = build_registry(user_types)
    except ValueError as err:
        raise ConfigError("INVALID_MANIFEST", str(err)) from err

    roots = tuple(parse_type_expr(expr, registry.user_types) for expr in config.types)
    print(f"Resolving: {len(roots)} root types")

    dependencies = collect_dependencies(registry, roots)
    ordered = dependency_sorted_type_descriptions(dependencies)
    print(f"  Types: {len(ordered)} in dependency order")

    write_config = WriteConfig(
        stem=config.stem,
        roots=tuple(format_type_expr(root) for root in roots),
    )
    bindings = build_root_bindings(registry, roots)
    specs = build_artifact_specs(write_config, ordered, bindings)

    result = write_artifacts(config.output_dir, specs)
    print(
        f"  Written: {len(result.files)} files, "
        f"{result.total_lines} lines to {result.output_dir}"
    )

    summary = build_generation_summary(registry, write_config, ordered, bindings, result)
    print_generation_summary(summary)
    return result


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationCounts:
    """Counts shown in the summary report.

    Attributes:
        roots: Requested root types.
        types: Distinct types in the dependency mapping.
        declarations: Types with a non-empty C declaration.
        metatypes: Types with a non-empty metatype statement.
        finalized_roots: Roots whose raw->Lua result needs a finalizer.
    """

    roots: int
    types: int
    declarations: int
    metatypes: int
    finalized_roots: int


@dataclass(frozen=True)
class GenerationSummary:
    roots_label: str
    output_dir: str
    counts: GenerationCounts
    order: tuple[str, ...]
    files: tuple[FileWriteResult, ...]


def build_generation_counts(
    ordered: list[TypeDescription], bindings: tuple[RootBinding, ...]
) -> GenerationCounts:
    return GenerationCounts(
        roots=len(bindings),
        types=len(ordered),
        declarations=sum(1 for d in ordered if d.typedeclaration()),
        metatypes=sum(1 for d in ordered if d.metatype()),
        finalized_roots=sum(
            1 for b in bindings if b.from_raw is not None and b.from_raw.gc()
        ),
    )


def build_generation_summary(
    registry: ProviderRegistry,
    write_config: WriteConfig,
    ordered: list[TypeDescription],
    bindings: tuple[RootBinding, ...],
    write_result: PackageWriteResult,
) -> GenerationSummary:
    return GenerationSummary(
        roots_label=", ".join(write_config.roots),
        output_dir=str(write_result.output_dir),
        counts=build_generation_counts(ordered, bindings),
        order=tuple(typename(registry, d.typeid) for d in ordered),
        files=write_result.files,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary as the console report.

    Returns a string with exactly one trailing newline.
    """
    lines: list[str] = []
    lines.append("LuaJIT marshalling generated:")
    lines.append("")
    lines.append(f"  Roots:      {summary.roots_label}")
    lines.append(f"  Output:     {summary.output_dir}")
    lines.append("")
    lines.append("  Dependency order:")
    for index, name in enumerate(summary.order, start=1):
        lines.append(f"    {index:>3}. {name}")
    lines.append("")
    lines.append("  Counts:")
    lines.append(f"    {'Roots:':<17}{summary.counts.roots:>6}")
    lines.append(f"    {'Types:':<17}{summary.counts.types:>6}")
    lines.append(f"    {'Declarations:':<17}{summary.counts.declarations:>6}")
    lines.append(f"    {'Metatypes:':<17}{summary.counts.metatypes:>6}")
    lines.append(f"    {'Finalized roots:':<17}{summary.counts.finalized_roots:>6}")
    lines.append("")
    lines.append("  Files written:")
    for file_result in summary.files:
        line_str = f"{file_result.line_count:>6,} lines"
        lines.append(f"    {file_result.filename:<28} {line_str}")

    total_lines = sum(f.line_count for f in summary.files)
    lines.append("")
    lines.append(f"  Total: {total_lines:,} lines across {len(summary.files)} files")
    lines.append("")

    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Discovery ---=== #


@dataclass(frozen=True)
class TypeDetail:
    """Everything --info reports about one type.

    Conversion fields are None when the type lacks that capability.
    """

    expr: str
    typename: str
    c_typename: str
    order: tuple[str, ...]
    from_raw: bool
    into_raw: bool
    gc: bool | None
    c_function_argument: str | None
    c_mut_function_argument: str | None


def format_primitives_table() -> str:
    lines = ["Primitive types:", ""]
    lines.append(f"  {'Name':<8}{'C type':<12}")
    lines.append(f"  {'-' * 4:<8}{'-' * 6:<12}")
    for name, c_name in PRIMITIVE_C_TYPES.items():
        lines.append(f"  {name:<8}{c_name:<12}")
    lines.append("")
    lines.append(f"  Text: String ({STRING_TYPENAME}), &str ({STR_TYPENAME})")
    lines.append("  Containers: Option<T>, Vec<T>, &[T]")
    return "\n".join(lines) + "\n"


def gather_type_detail(registry: ProviderRegistry, ref: TypeRef) -> TypeDetail:
    ordered = dependency_sorted_type_descriptions(make_dependencies(registry, ref))
    provider = registry.provider(ref)
    has_from_raw = provider.has_from_raw(registry, ref)
    has_into_raw = provider.has_into_raw(registry, ref)
    from_raw = from_raw_conversion(registry, ref) if has_from_raw else None
    into_raw = into_raw_conversion(registry, ref) if has_into_raw else None
    return TypeDetail(
        expr=format_type_expr(ref),
        typename=typename(registry, ref),
        c_typename=c_typename(registry, ref),
        order=tuple(typename(registry, d.typeid) for d in ordered),
        from_raw=has_from_raw,
        into_raw=has_into_raw,
        gc=from_raw.gc() if from_raw else None,
        c_function_argument=into_raw.c_function_argument() if into_raw else None,
        c_mut_function_argument=(
            from_raw.c_mut_function_argument() if from_raw else None
        ),
    )


def format_type_detail(detail: TypeDetail) -> str:
    def _yes_no(value: bool) -> str:
        return "yes" if value else "no"

    lines = [f"{detail.expr}", ""]
    lines.append(f"  Name:            {detail.typename}")
    lines.append(f"  C name:          {detail.c_typename}")
    lines.append(f"  Raw -> Lua:      {_yes_no(detail.from_raw)}")
    lines.append(f"  Lua -> raw:      {_yes_no(detail.into_raw)}")
    if detail.gc is not None:
        lines.append(f"  Finalizer:       {_yes_no(detail.gc)}")
    if detail.c_function_argument is not None:
        lines.append(f"  Input argument:  {detail.c_function_argument}")
    if detail.c_mut_function_argument is not None:
        lines.append(f"  Output argument: {detail.c_mut_function_argument}")
    lines.append("")
    lines.append("  Dependency order:")
    for index, name in enumerate(detail.order, start=1):
        lines.append(f"    {index:>3}. {name}")
    return "\n".join(lines) + "\n"


def run_discovery(config: DiscoveryConfig) -> None:
    if config.command == "list-primitives":
        print(format_primitives_table(), end="")
        return

    user_types = load_manifest(config.manifest) if config.manifest else ()
    try:
        registry = build_registry(user_types)
    except ValueError as err:
        raise ConfigError("INVALID_MANIFEST", str(err)) from err
    ref = parse_type_expr(config.type_expr or "", registry.user_types)
    print(format_type_detail(gather_type_detail(registry, ref)), end="")


# ===--- Main generation ---=== #


def _print_config_error(err: ConfigError) -> None:
    print(f"Config error [{err.code}]: {err.message}")
    if err.suggestion:
        print(f"Hint: {err.suggestion}")


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
    except ConfigError as err:
        _print_config_error(err)
        raise SystemExit(1) from err

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
        else:
            run_generate(config)
    except ConfigError as err:
        _print_config_error(err)
        raise SystemExit(1) from err
    except GenerationError as err:
        print(f"Generation error [{err.code}]: {err.message}")
        raise SystemExit(1) from err
    except (OSError, ET.ParseError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
