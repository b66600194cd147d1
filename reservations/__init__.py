"""Appointment scheduling application for the clinic backend.

This package holds the doctor schedules and their slots, the reservation
engine (hold, book, release, cancel), the expiry sweeper and the waitlist,
together with the API views and routes that expose them.
"""
