# Overview: Flask blueprints; parse input, call services, return JSON.
