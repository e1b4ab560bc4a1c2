from codestyle_mcp import layout
from codestyle_mcp.indexer import ScoredResult
from codestyle_mcp.schema import TemplateFile


def _file(file_path, filename, variables=()):
    return TemplateFile.model_validate(
        {
            "filePath": file_path,
            "filename": filename,
            "version": "1.0.0",
            "sha256": "00",
            "inputVariables": list(variables),
        }
    )


def test_tree_string_nests_version_and_directories():
    files = [
        _file("/src/main/java/controller", "Controller.java.ftl"),
        _file("/src/main/java/service", "Service.java.ftl"),
        _file("/src/main/resources", "Mapper.xml.ftl"),
    ]
    assert layout.tree_string("top.codestyle", "crud", files) == "\n".join(
        [
            "top.codestyle/crud",
            "└── 1.0.0",
            "    └── src",
            "        └── main",
            "            ├── java",
            "            │   ├── controller",
            "            │   │   └── Controller.java.ftl",
            "            │   └── service",
            "            │       └── Service.java.ftl",
            "            └── resources",
            "                └── Mapper.xml.ftl",
        ]
    )


def test_variables_string_first_declaration_wins():
    files = [
        _file("/a", "a.ftl", [{"variableName": "className", "variableType": "String", "variableComment": "class name"}]),
        _file(
            "/b",
            "b.ftl",
            [
                {"variableName": "className", "variableType": "Object", "variableComment": "other"},
                {"variableName": "变量名：tableName", "variableType": "变量类型：String", "variableComment": "table"},
            ],
        ),
    ]
    assert layout.variables_string(files) == "className: class name[String]\ntableName: table[String]"


def test_content_string_wraps_blocks():
    assert layout.content_string(["a", None]) == "```\na\n```\n```\n\n```\n"


def test_listings():
    results = [
        ScoredResult("g", "crud", "CRUD controller\nmore text", "/m", 2.0),
        ScoredResult("h", "bare", "", "/m", 1.0),
    ]
    assert layout.namespace_listing(results) == "- crud: CRUD controller\n- bare"
    assert layout.candidates_listing(results) == "- g/crud: CRUD controller\n- h/bare"
