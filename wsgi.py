# wsgi.py
from app import app as application
