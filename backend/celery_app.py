from bazaarlink import create_app
from bazaarlink.celery_app import create_celery_app

# celery -A celery_app.celery worker -B
flask_app = create_app()
celery = create_celery_app(flask_app)
