import importlib.util
import json
import os
from pathlib import Path

from lowcode_runtime.storage.memory import MemoryDefinitionStore

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "seed_endpoints.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("seed_endpoints", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


ENTRIES = {
    "endpoints": [
        {
            "id": "double",
            "path": "/double",
            "method": "POST",
            "handlerKind": "formula",
            "handlerConfig": {"expression": "request.body.n * 2"},
        },
        {"path": "/broken", "handlerKind": "nope"},
    ]
}


def test_seed_validates_and_upserts(tmp_path, capsys):
    seed_file = tmp_path / "endpoints.json"
    seed_file.write_text(json.dumps(ENTRIES))
    module = _load_script()

    results = module.seed(module.load_entries(seed_file))

    assert [r["status"] for r in results] == ["created", "invalid"]
    assert "handlerKind" in capsys.readouterr().out
    store = MemoryDefinitionStore(os.environ["SHARED_FS_ROOT"])
    assert store.get("double").handler_config == {"expression": "request.body.n * 2"}

    again = module.seed(module.load_entries(seed_file)[:1])
    assert again[0]["status"] == "replaced"


def test_seed_dry_run_writes_nothing(tmp_path):
    seed_file = tmp_path / "endpoints.json"
    seed_file.write_text(json.dumps(ENTRIES["endpoints"][:1]))
    module = _load_script()

    results = module.seed(module.load_entries(seed_file), dry_run=True)

    assert results == [{"index": 0, "id": "double", "status": "dry_run"}]
    assert MemoryDefinitionStore(os.environ["SHARED_FS_ROOT"]).get("double") is None
