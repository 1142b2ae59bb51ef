import logging
import os

from console_config import ConsoleConfig
from console_server import create_app


if __name__ == '__main__':
    config = ConsoleConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
    )
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    app = create_app(config)
    app.run(host=host, port=port, debug=debug)
