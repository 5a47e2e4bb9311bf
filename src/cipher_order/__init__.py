from .protocol import *
from .scan import *
from .report import format_table, format_all_ciphers_table, to_json_document, to_json
