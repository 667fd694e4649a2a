from __future__ import annotations

from pathlib import Path

import pytest

import luamarshal
from luamarshal import STR, STRING, option, primitive, slice_of, vec

U8 = primitive("u8")
BORDER = "x-------------------------------------------x"


def _render(registry, *roots):
    deps = luamarshal.collect_dependencies(registry, roots)
    ordered = luamarshal.dependency_sorted_type_descriptions(deps)
    bindings = luamarshal.build_root_bindings(registry, roots)
    config = luamarshal.WriteConfig(
        stem="marshalling",
        roots=tuple(luamarshal.format_type_expr(r) for r in roots),
    )
    return config, ordered, bindings


def test_format_file_header_uses_comment_prefix_and_request_order() -> None:
    config = luamarshal.WriteConfig(stem="demo", roots=("Vec<u8>", "String"))

    lines = luamarshal.format_file_header(config, "--")

    assert lines == [
        f"-- {BORDER} --",
        "-- | LuaJIT FFI marshalling: demo",
        "-- | Generated by lua-marshalling-gen",
        "-- | Roots: Vec<u8>, String",
        f"-- {BORDER} --",
    ]


def test_format_file_header_rejects_empty_roots() -> None:
    with pytest.raises(ValueError):
        luamarshal.format_file_header(luamarshal.WriteConfig("demo", ()), "//")


def test_assemble_header_source_exact_output(registry) -> None:
    config, ordered, _ = _render(registry, option(U8))

    source = luamarshal.assemble_header_source(config, ordered)

    assert source == (
        f"// {BORDER} //\n"
        "// | LuaJIT FFI marshalling: marshalling\n"
        "// | Generated by lua-marshalling-gen\n"
        "// | Roots: Option<u8>\n"
        f"// {BORDER} //\n"
        "\n"
        "#pragma once\n"
        "#include <stdint.h>\n"
        "\n"
        "typedef struct {\n"
        "    const uint8_t *ptr;\n"
        "} Option_u8;\n"
    )


def test_assemble_header_source_emits_declarations_in_dependency_order(registry) -> None:
    config, ordered, _ = _render(registry, vec(option(vec(U8))), slice_of(U8))

    source = luamarshal.assemble_header_source(config, ordered)

    assert source.index("} Vec_u8;") < source.index("} Option_Vec_u8;")
    assert source.index("} Option_Vec_u8;") < source.index("} Vec_Option_Vec_u8;")
    assert source.count("typedef struct {") == 4
    assert "\n\n\n" not in source


def test_assemble_lua_source_for_primitive_root_exact_output(registry) -> None:
    config, ordered, bindings = _render(registry, U8)

    source = luamarshal.assemble_lua_source(config, ordered, bindings)

    assert source == (
        f"-- {BORDER} --\n"
        "-- | LuaJIT FFI marshalling: marshalling\n"
        "-- | Generated by lua-marshalling-gen\n"
        "-- | Roots: u8\n"
        f"-- {BORDER} --\n"
        "\n"
        'local ffi = require("ffi")\n'
        "\n"
        "local function invoke(value, f)\n"
        "    return f(value)\n"
        "end\n"
        "\n"
        "local M = {\n"
        "    from_raw = {},\n"
        "    into_raw = {},\n"
        "    gc = {},\n"
        "    c_function_argument = {},\n"
        "    c_mut_function_argument = {},\n"
        "}\n"
        "\n"
        'M.from_raw["u8"] = function(value) return value end\n'
        'M.gc["u8"] = false\n'
        'M.c_mut_function_argument["u8"] = "uint8_t"\n'
        'M.into_raw["u8"] = function(value) return value end\n'
        'M.c_function_argument["u8"] = "uint8_t"\n'
        "\n"
        "return M\n"
    )


def test_assemble_lua_source_places_cdef_and_metatypes_before_bindings(registry) -> None:
    config, ordered, bindings = _render(registry, option(vec(U8)))

    source = luamarshal.assemble_lua_source(config, ordered, bindings)

    cdef = source.index("ffi.cdef[[")
    assert cdef < source.index("} Vec_u8;") < source.index("} Option_Vec_u8;")
    assert source.index("]]") > source.index("} Option_Vec_u8;")
    vec_meta = source.index('local Vec_u8 = ffi.metatype("Vec_u8", {})')
    option_meta = source.index('local Option_Vec_u8 = ffi.metatype("Option_Vec_u8", {})')
    assert vec_meta < option_meta < source.index("local M = {")
    assert 'M.from_raw["Option_Vec_u8"] = function(value)' in source
    assert 'M.gc["Option_Vec_u8"] = true' in source
    assert 'M.c_function_argument["Option_Vec_u8"] = "const Option_Vec_u8*"' in source
    assert 'M.c_mut_function_argument["Option_Vec_u8"] = "Option_Vec_u8*"' in source


def test_assemble_lua_source_fails_for_unsupported_nesting(registry) -> None:
    config, ordered, bindings = _render(registry, vec(option(U8)))
    assert bindings[0].into_raw is not None

    with pytest.raises(luamarshal.UnsupportedNestingError):
        luamarshal.build_artifact_specs(config, ordered, bindings)


def test_root_binding_omits_missing_capabilities(registry) -> None:
    bindings = luamarshal.build_root_bindings(registry, [STR, slice_of(U8)])

    lines = luamarshal.format_root_binding(bindings[0])

    assert bindings[0].from_raw is None
    assert lines == [
        'M.into_raw["_str_ptr__"] = function(value) return value end',
        'M.c_function_argument["_str_ptr__"] = "const char *"',
    ]
    assert not any(line.startswith("M.from_raw") for line in
                   luamarshal.format_root_binding(bindings[1]))


def test_root_binding_strips_surrounding_newlines(registry) -> None:
    (binding,) = luamarshal.build_root_bindings(registry, [option(STRING)])

    lines = luamarshal.format_root_binding(binding)

    into_raw_line = next(line for line in lines if line.startswith("M.into_raw"))
    assert into_raw_line.startswith('M.into_raw["Option___string_ptr"] = function(value)\n')
    assert into_raw_line.endswith("end")


def test_write_artifact_reports_truthful_counts(tmp_path: Path) -> None:
    spec = luamarshal.ArtifactSpec("demo.lua", "return {}\n-- é\n")

    result = luamarshal.write_artifact(tmp_path / "nested" / "out", spec)

    assert result.filename == "demo.lua"
    assert result.path == (tmp_path / "nested" / "out" / "demo.lua").resolve()
    assert result.line_count == 2
    assert result.byte_count == len("return {}\n-- é\n".encode("utf-8"))
    assert result.path.read_text(encoding="utf-8") == spec.content


def test_write_artifacts_preserves_spec_order(tmp_path: Path) -> None:
    specs = (
        luamarshal.ArtifactSpec("a.h", "one\n"),
        luamarshal.ArtifactSpec("a.lua", "one\ntwo\n"),
    )

    result = luamarshal.write_artifacts(tmp_path, specs)

    assert [f.filename for f in result.files] == ["a.h", "a.lua"]
    assert result.total_lines == 3
    assert result.output_dir == tmp_path
