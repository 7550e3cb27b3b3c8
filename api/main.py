import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routers.hdr_wizard import router as hdr_router


def create_app() -> FastAPI:
	app = FastAPI(title="HDR Antighost API", version="0.2.0")

	# CORS (adjust origins in production)
	app.add_middleware(
		CORSMiddleware,
		allow_origins=["*"],
		allow_credentials=False,
		allow_methods=["*"],
		allow_headers=["*"],
	)

	# Routers
	app.include_router(hdr_router)

	return app


app = create_app()


if __name__ == "__main__":
	# Local dev server: uvicorn api.main:app --reload
	import uvicorn

	logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
	uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=True)
