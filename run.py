import os
from lifescribe import create_app

app = create_app()

if __name__ == '__main__':
    # Configuration from the environment
    debug = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'
    port = int(os.environ.get('FLASK_PORT', 8991))

    app.run(host='0.0.0.0', port=port, debug=debug)
