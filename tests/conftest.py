import sys
import xml.etree.ElementTree as ET
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import luamarshal  # noqa: E402


@pytest.fixture
def registry() -> luamarshal.ProviderRegistry:
    return luamarshal.build_registry()


@pytest.fixture
def make_user_type() -> Callable[..., luamarshal.UserTypeDef]:
    def _make_user_type(
        name: str,
        *,
        c_name: str | None = None,
        dependencies: tuple[luamarshal.TypeRef, ...] = (),
        from_raw_function: str | None = "function(value) return value end",
        into_raw_function: str | None = "function(value) return value end",
        gc: bool = False,
    ) -> luamarshal.UserTypeDef:
        c_name = c_name or name
        return luamarshal.UserTypeDef(
            name=name,
            c_name=c_name,
            declaration=f"typedef struct {{ int32_t id; }} {c_name};",
            metatype=luamarshal.lua_metatype(name),
            dependencies=dependencies,
            from_raw_function=from_raw_function,
            into_raw_function=into_raw_function,
            gc=gc,
        )

    return _make_user_type


@pytest.fixture
def make_description() -> Callable[..., luamarshal.TypeDescription]:
    def _make_description(
        ref: luamarshal.TypeRef, *deps: luamarshal.TypeRef
    ) -> luamarshal.TypeDescription:
        return luamarshal.TypeDescription(
            typeid=ref,
            dependencies=frozenset(deps),
            typedeclaration=lambda: f"typedef struct {{}} {ref};",
            metatype=lambda: "",
        )

    return _make_description


@pytest.fixture
def make_manifest_root() -> Callable[[str], ET.Element]:
    def _make_manifest_root(inner_xml: str) -> ET.Element:
        return ET.fromstring(f"<types>{inner_xml}</types>")

    return _make_manifest_root


@pytest.fixture
def write_manifest(tmp_path: Path) -> Callable[[str], Path]:
    def _write_manifest(inner_xml: str) -> Path:
        path = tmp_path / "types.xml"
        path.write_text(f"<types>{inner_xml}</types>\n", encoding="utf-8")
        return path

    return _write_manifest
