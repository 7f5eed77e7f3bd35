# run.py
import uvicorn
import logging
logging.basicConfig(level=logging.INFO)
logging.getLogger("cycles").setLevel(logging.INFO)
logging.getLogger("mqtt").setLevel(logging.INFO)

uvicorn.run("cyclehub.main:app", host="0.0.0.0", port=8080, reload=False)
