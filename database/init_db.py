import os
import sys

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from supplier_portal import create_app


app = create_app()


if __name__ == "__main__":
    services = app.extensions["tenancy"]
    services.mappings.init_schema()
    if os.environ.get("SEED_DEMO_TENANTS", "0").strip().lower() in {"1", "true", "yes", "sim"}:
        from database.seed_demo_tenants import main as seed_demo_tenants

        seed_demo_tenants()
    services.close()
    print("Base do portal inicializada.")
