from loam.geocoding.geocode_task import GeocodeRideParams, geocode_ride_task
from loam.worker.services import BackgroundServices
from loam.worker.worker import Worker

worker = Worker()


@worker.function(GeocodeRideParams)
async def geocode_ride(job_id: str, params: GeocodeRideParams, services: BackgroundServices):
    """Replace a ride's ``Lat x, Lon y`` placeholder with a place name."""
    return await geocode_ride_task(job_id=job_id, params=params, geocoder=services.geocoder)
