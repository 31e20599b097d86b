from hie_sync.db.session import state_engine
from hie_sync.models.base import Base
from hie_sync.models import tables  # noqa: F401


def main():
    Base.metadata.create_all(bind=state_engine)
    print("State tables created.")


if __name__ == "__main__":
    main()
