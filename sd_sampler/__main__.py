# sd_sampler/__main__.py
"""
Package entrypoint for the sampler.

Allows execution via:
    python -m sd_sampler 7.5 50 "a photo of an astronaut" out/astronaut
"""

from sd_sampler.main import main

if __name__ == "__main__":
    raise SystemExit(main())
