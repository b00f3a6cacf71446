import json
import os
import sys

from vanguard_db.api.main import app


def write_openapi(output_dir: str = "interfaces") -> str:
    """Write the OpenAPI schema of the app to <output_dir>/openapi.json and return the path."""
    openapi_schema = app.openapi()

    # Document the routing header once at the top level; every route accepts it.
    openapi_schema["x-db-code-header"] = {
        "name": "X-Db-Code",
        "description": "Database code to route the request to. The default database is used when absent.",
    }

    os.makedirs(output_dir, exist_ok=True)
    output_path = os.path.join(output_dir, "openapi.json")
    with open(output_path, "w") as f:
        json.dump(openapi_schema, f, indent=2)
    return output_path


if __name__ == "__main__":
    print(write_openapi(*sys.argv[1:2]))
