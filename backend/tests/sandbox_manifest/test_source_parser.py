from __future__ import annotations

from app.services.sandbox_source_parser import ParsedSource, UnparsedSource, parse_source


def test_parses_imports_exports_and_component():
    source = """
import React, { useState, useEffect as useMount } from 'react'
import * as utils from './utils'
import './App.css'
const Lazy = React.lazy(() => import('./pages/Lazy'))
const legacy = require("./legacy.js")

// import Ghost from './ghost'
export const VERSION = '1.0'
export function helper() {}

function App() {
  const [count] = useState(0)
  return <div className="p-4">Don't panic: {count}</div>
}

export default App
"""
    result = parse_source(source, "src/App.jsx")

    assert isinstance(result, ParsedSource)
    sources = [spec.source for spec in result.imports]
    assert sources == ["react", "./utils", "./App.css", "./pages/Lazy", "./legacy.js"]
    react_import = result.imports[0]
    assert react_import.default == "React"
    assert react_import.names == ("useState", "useMount")
    assert react_import.is_local is False
    assert result.imports[1].namespace == "utils"
    assert result.imports[2].kind == "side_effect"
    assert result.imports[3].kind == "dynamic"
    assert result.imports[4].kind == "require"
    assert result.default_export == "App"
    assert result.exports == ("VERSION", "helper", "default")
    assert result.has_jsx is True
    assert result.component_name == "App"


def test_plain_module_has_no_component():
    result = parse_source("export const add = (a, b) => a < b ? b : a\n", "src/math.js")

    assert isinstance(result, ParsedSource)
    assert result.has_jsx is False
    assert result.component_name is None
    assert result.exports == ("add",)


def test_typescript_generics_are_not_jsx():
    result = parse_source("export function first<T>(items: Array<T>): T { return items[0] }\n", "src/first.ts")

    assert isinstance(result, ParsedSource)
    assert result.has_jsx is False


def test_reexports_count_as_imports():
    result = parse_source("export { Button } from './Button'\nexport * from './Card'\n", "src/components/index.js")

    assert isinstance(result, ParsedSource)
    assert [spec.source for spec in result.imports] == ["./Button", "./Card"]
    assert all(spec.kind == "reexport" for spec in result.imports)


def test_unbalanced_source_is_unparsed():
    result = parse_source("function Broken() {\n  return (<div>\n}\n", "src/Broken.jsx")

    assert isinstance(result, UnparsedSource)
    assert result.reason


def test_unterminated_comment_is_unparsed():
    result = parse_source("/* never closed\nexport default 1\n", "src/x.js")

    assert result == UnparsedSource(reason="unterminated block comment")


def test_strings_do_not_affect_bracket_balance():
    result = parse_source("export const label = '}}}((('\nexport const tpl = `a ${label} {`\n", "src/labels.js")

    assert isinstance(result, ParsedSource)
    assert result.exports == ("label", "tpl")


def test_regex_literals_do_not_affect_bracket_balance():
    source = "export function strip(s) {\n  return s.replace(/\\(/g, '').replace(/[)/]/g, '')\n}\n"

    result = parse_source(source, "src/util.js")

    assert isinstance(result, ParsedSource)
    assert result.exports == ("strip",)


def test_division_is_not_a_regex():
    result = parse_source("export const ratio = (a, b) => a / b / (b + 1)\n", "src/ratio.js")

    assert isinstance(result, ParsedSource)
    assert result.exports == ("ratio",)


def test_urls_in_jsx_text_are_not_comments():
    source = """import { useState } from 'react'

export default function Links({ links }) {
  return (<ul>{links.map((l) => (<li key={l}><a href={l}>https://{l}</a></li>))}
  </ul>)
}
"""
    result = parse_source(source, "src/Links.jsx")

    assert isinstance(result, ParsedSource)
    assert result.has_jsx is True
    assert result.component_name == "Links"
    assert [spec.source for spec in result.imports] == ["react"]
