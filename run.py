from __future__ import annotations
import os
from kalm import create_app

def main() -> None:
    flask_app = create_app()

    if flask_app.config["DEBUG"]:
        flask_app.logger.debug("Mounted routes:\n%s", "\n".join(
            str(r) for r in sorted(flask_app.url_map.iter_rules(), key=lambda x: x.rule)
        ))

    flask_app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=flask_app.config["DEBUG"])

if __name__ == "__main__":
    main()
