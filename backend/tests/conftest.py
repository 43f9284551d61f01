import os, sys, pytest
# Ensure backend directory is on path so 'servicedesk' can be imported
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from servicedesk import create_app, get_db
from servicedesk.models.org import Base
from servicedesk.models.immutability import register_immutability_listeners
# Import all model modules to ensure tables are registered before create_all
import servicedesk.models.reference  # noqa: F401
import servicedesk.models.inventory  # noqa: F401
import servicedesk.models.service_ticket  # noqa: F401
import servicedesk.models.part_usage  # noqa: F401
import servicedesk.models.audit  # noqa: F401
from tests.test_utils_seed import FrozenClock


@pytest.fixture(scope='session', autouse=True)
def app_instance():
    app = create_app({
        'DATABASE_URL': 'sqlite+pysqlite:///:memory:',
        'JWT_SECRET_KEY': 'test-secret',
        'DISPATCH_MODE': 'inline',
    })
    # After app and blueprints are registered, ensure all tables exist
    with app.app_context():
        engine = get_db().get_bind()
        Base.metadata.create_all(engine)
    yield app


@pytest.fixture()
def client(app_instance):
    return app_instance.test_client()


@pytest.fixture()
def engine():
    """Fresh in-memory database per test for the service-level suites."""
    eng = create_engine(
        'sqlite+pysqlite:///:memory:',
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    register_immutability_listeners()
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    s = factory()
    yield s
    s.close()


@pytest.fixture()
def clock():
    return FrozenClock()
