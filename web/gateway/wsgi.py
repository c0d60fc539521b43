import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "gateway.settings")

application = get_wsgi_application()

# The in-process stock ledger is only visible to this process.
from orders.sweeper import start_local_sweeper  # noqa: E402

start_local_sweeper()
