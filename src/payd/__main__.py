import os

import uvicorn


def main():
    uvicorn.run("payd.app:app", host="0.0.0.0", port=int(os.getenv("PORT", 3001)), lifespan="on")


if __name__ == "__main__":
    main()
