"""uvicorn entrypoint for the ledger API (installed as `opsdb-serve`)."""

import os
from typing import Any, Dict

import uvicorn

_TRUTHY = {"1", "true", "yes", "on"}
_SSL_ENV = (
    ("SSL_CERTFILE", "ssl_certfile"),
    ("SSL_KEYFILE", "ssl_keyfile"),
    ("SSL_CA_CERTS", "ssl_ca_certs"),
)


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def server_options() -> Dict[str, Any]:
    options: Dict[str, Any] = {
        "host": os.getenv("HOST", "0.0.0.0"),
        "port": int(os.getenv("PORT", "8000")),
        "reload": _flag("RELOAD"),
        "log_level": os.getenv("LOG_LEVEL", "info"),
        "proxy_headers": _flag("PROXY_HEADERS", "true"),
        "forwarded_allow_ips": os.getenv("FORWARDED_ALLOW_IPS", "*"),
    }
    options.update({option: os.environ[env] for env, option in _SSL_ENV if os.getenv(env)})
    return options


def main() -> None:
    # create_app builds its own engine, so uvicorn calls it as a factory
    uvicorn.run("opsdb.main:create_app", factory=True, **server_options())


if __name__ == "__main__":
    main()
