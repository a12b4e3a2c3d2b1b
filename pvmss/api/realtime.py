# -*- coding: utf-8 -*-
"""flask-sock instance; init_app() is called from create_app()"""

from flask_sock import Sock

sock = Sock()
