# Overview: Service layer; business rules and database work for the consistency engine.
