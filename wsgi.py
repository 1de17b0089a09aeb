from propertyops import create_app

app = create_app()

# Run the outbox timer in exactly one process: set OUTBOX_SCHEDULER_ENABLED=true
# on a single worker (e.g. gunicorn -w 1 wsgi:app) and leave it unset elsewhere.
# Two processors against one database rely on the conditional claim update alone.
