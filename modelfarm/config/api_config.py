#!filepath: modelfarm/config/api_config.py
from pydantic import BaseModel


class ApiConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 5000
