from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from datetime import timedelta
import logging
import os

db = SQLAlchemy()


def create_app(test_config=None):
    app = Flask(__name__, static_folder='../static', template_folder='../templates')

    # Paths
    base_dir = os.path.dirname(os.path.abspath(__file__))
    data_dir = os.environ.get('LIFESCRIBE_DATA_DIR', os.path.join(base_dir, '..', 'data'))
    os.makedirs(data_dir, exist_ok=True)

    # Configuration
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'lifescribe-dev-secret-key')
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get(
        'DATABASE_URL', 'sqlite:///' + os.path.join(data_dir, 'lifescribe.db')
    )
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['UPLOAD_FOLDER'] = os.path.join(data_dir, 'uploads')
    app.config['MAX_CONTENT_LENGTH'] = 50 * 1024 * 1024  # 50MB per request

    # Outbound e-mail
    app.config['APP_URL'] = os.environ.get('APP_URL', 'http://localhost:8991')
    app.config['RESEND_API_KEY'] = os.environ.get('RESEND_API_KEY')
    app.config['DIGEST_FROM_EMAIL'] = os.environ.get(
        'DIGEST_FROM_EMAIL', 'LifeScribe Weekly Digest <updates@updates.lifescribe.family>'
    )
    app.config['INVITE_FROM_EMAIL'] = os.environ.get(
        'INVITE_FROM_EMAIL', 'LifeScribe <onboarding@resend.dev>'
    )

    # Drafts
    app.config['DRAFT_AUTOSAVE_INTERVAL'] = float(os.environ.get('DRAFT_AUTOSAVE_INTERVAL', 5))

    # Session
    app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(days=31)
    app.config['SESSION_COOKIE_SECURE'] = os.environ.get('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )

    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    CORS(app, supports_credentials=True)

    db.init_app(app)

    # Blueprints
    from lifescribe.routes import main_bp, api_bp
    from lifescribe.exports import functions_bp
    app.register_blueprint(main_bp)
    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(functions_bp, url_prefix='/functions/v1')

    with app.app_context():
        db.create_all()

    return app
