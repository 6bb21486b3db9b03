from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_login import LoginManager

login_manager = LoginManager()
login_manager.session_protection = "strong"

limiter = Limiter(key_func=get_remote_address)
