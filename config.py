import os

# Address the listener binds to
HOST = os.getenv('FILESERVE_HOST', '127.0.0.1')
PORT = int(os.getenv('FILESERVE_PORT', '8080'))

# Bytes read from disk per chunk when streaming a file
CHUNK_SIZE = int(os.getenv('FILESERVE_CHUNK_SIZE', '65536'))

# Upper bound for the request line + headers
MAX_REQUEST_HEAD = 8192

LOG_LEVEL = os.getenv('FILESERVE_LOG_LEVEL', 'INFO').upper()
LOG_FORMAT = '%(asctime)s [%(threadName)s] %(levelname)s %(message)s'
